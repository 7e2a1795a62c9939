"""Remote data store collaborators.

The remote store applies one mutation per call and must treat a token it
has already applied as a successful no-op.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..errors import PermanentSyncFailure, TransientSyncFailure
from ..mutations.models import MutationKind

logger = logging.getLogger(__name__)


class RemoteStore(Protocol):
    """Protocol that remote collaborators must follow."""

    async def apply_mutation(
        self,
        token: str,
        kind: MutationKind,
        entity_type: str,
        entity_id: Optional[str],
        payload: Any,
    ) -> None:
        """Apply one mutation. Raise on failure."""
        ...


class HttpRemoteStore:
    """Sends mutations to ``POST {base_url}/mutations``.

    The idempotency token travels both in the body and in the
    ``Idempotency-Key`` header. Non-2xx responses raise
    ``httpx.HTTPStatusError`` for the classifier to inspect.
    """

    endpoint = "/mutations"

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Accept": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._headers = headers
        self._owns_client = client is None

    async def apply_mutation(
        self,
        token: str,
        kind: MutationKind,
        entity_type: str,
        entity_id: Optional[str],
        payload: Any,
    ) -> None:
        body = {
            "id": token,
            "kind": kind.value,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "payload": payload,
        }
        response = await self._client.post(
            self.endpoint,
            json=body,
            headers={**self._headers, "Idempotency-Key": token},
        )
        response.raise_for_status()
        logger.debug("Remote applied %s (%s)", token, response.status_code)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


@dataclass
class AppliedMutation:
    """A mutation as recorded by ``InMemoryRemoteStore``."""
    token: str
    kind: MutationKind
    entity_type: str
    entity_id: Optional[str]
    payload: Any


@dataclass
class InMemoryRemoteStore:
    """Remote store kept in process memory.

    ``fail_next`` maps a token to a list of exceptions raised on its next
    calls, one per call. ``reachable = False`` makes every call fail with a
    transient error.
    """

    applied: List[AppliedMutation] = field(default_factory=list)
    calls: List[str] = field(default_factory=list)
    fail_next: Dict[str, List[Exception]] = field(default_factory=dict)
    reachable: bool = True
    entities: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    async def apply_mutation(
        self,
        token: str,
        kind: MutationKind,
        entity_type: str,
        entity_id: Optional[str],
        payload: Any,
    ) -> None:
        self.calls.append(token)
        if not self.reachable:
            raise TransientSyncFailure("remote unreachable", token)
        failures = self.fail_next.get(token)
        if failures:
            raise failures.pop(0)
        if token in self.applied_tokens:
            return

        key = f"{entity_type}:{entity_id}"
        if kind == MutationKind.DELETE:
            self.entities.pop(key, None)
        elif kind == MutationKind.UPDATE:
            if key not in self.entities:
                raise PermanentSyncFailure(f"{key} does not exist", token, status_code=404)
            self.entities[key].update(payload or {})
        else:
            self.entities[key] = dict(payload or {})

        self.applied.append(AppliedMutation(token, kind, entity_type, entity_id, payload))

    @property
    def applied_tokens(self) -> List[str]:
        return [m.token for m in self.applied]
