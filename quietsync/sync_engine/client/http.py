"""HTTP implementation of the index service.

Each logical operation is one ``POST {base_url}/aiserver.v1.RepositoryService/<Method>``
with a camelCase JSON body and a bearer token.  Responses are parsed
defensively: the service may use either camelCase or snake_case keys, and
reports enum values by name or by ordinal.

Transport errors, timeouts and non-2xx responses surface as ``httpx``
exceptions so that the work queue can retry them.  A 2xx response missing a
required field raises ``ProtocolShapeError`` instead.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from quietsync.sync_engine.client.base import ProtocolShapeError
from quietsync.sync_engine.models.enums import CodebaseStatus
from quietsync.sync_engine.models.protocol import (
    DiffNodeRequest,
    DiffNodeResult,
    HandshakeRequest,
    HandshakeResult,
    NodeHint,
    RepositoryInfo,
    SyncCompleteRequest,
    UploadFileRequest,
)

logger = logging.getLogger(__name__)

SERVICE_PATH = "/aiserver.v1.RepositoryService"
UPDATE_TYPE_MODIFY = 1


def _pick(obj: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = obj.get(key)
        if value is not None:
            return value
    return None


class HttpIndexService:
    """``IndexService`` over HTTP with JSON bodies.

    Owns its ``httpx.AsyncClient`` unless one is passed in.  Use as an async
    context manager, or call ``aclose`` when done.
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._own_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={
                "Authorization": f"Bearer {auth_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    async def __aenter__(self) -> HttpIndexService:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._own_client:
            await self._client.aclose()

    async def _call(self, method: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(f"{SERVICE_PATH}/{method}", json=body)
        response.raise_for_status()
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            msg = f"{method}: response is not JSON"
            raise ProtocolShapeError(msg) from exc
        if not isinstance(data, dict):
            msg = f"{method}: expected a JSON object, got {type(data).__name__}"
            raise ProtocolShapeError(msg)
        return data

    # -- Operations ------------------------------------------------------------

    async def handshake(self, request: HandshakeRequest) -> HandshakeResult:
        data = await self._call("FastRepoInitHandshakeV2", request.to_wire())
        codebases = data.get("codebases") or []
        first = codebases[0] if codebases and isinstance(codebases[0], dict) else {}
        codebase_id = _pick(first, "codebaseId", "codebase_id")
        if not codebase_id:
            msg = "No codebase_id in handshake response"
            raise ProtocolShapeError(msg)
        status = CodebaseStatus.parse(first.get("status"))
        logger.debug("Handshake returned codebase %s (status=%s)", codebase_id, status)
        return HandshakeResult(codebase_id=str(codebase_id), status=status)

    async def diff_node(self, request: DiffNodeRequest) -> DiffNodeResult:
        body = {
            "clientRepositoryInfo": {"orthogonalTransformSeed": request.orthogonal_transform_seed},
            "codebaseId": request.codebase_id,
            "localPartialPath": {
                "relativeWorkspacePath": request.encrypted_path,
                "hashOfNode": request.hash_of_node,
            },
        }
        data = await self._call("SyncMerkleSubtreeV2", body)
        if data.get("match"):
            return DiffNodeResult(match=True)

        mismatch = data.get("mismatch") or {}
        children: list[NodeHint] = []
        for child in mismatch.get("children") or []:
            if not isinstance(child, dict):
                continue
            enc = _pick(child, "relativeWorkspacePath", "relative_workspace_path")
            if not enc:
                continue
            node_hash = _pick(child, "hashOfNode", "hash_of_node") or ""
            children.append(NodeHint(encrypted_path=str(enc), hash_of_node=str(node_hash)))
        return DiffNodeResult(match=False, children=children)

    async def upload_file(self, request: UploadFileRequest) -> None:
        body = {
            "clientRepositoryInfo": {"orthogonalTransformSeed": request.orthogonal_transform_seed},
            "codebaseId": request.codebase_id,
            "localFile": {
                "file": {"relativeWorkspacePath": request.encrypted_path, "contents": request.contents},
                "hash": request.content_hash,
            },
            "ancestorSpline": [{"relativeWorkspacePath": p} for p in request.ancestor_paths],
            "updateType": UPDATE_TYPE_MODIFY,
        }
        await self._call("FastUpdateFileV2", body)

    async def ensure_index(self, repository: RepositoryInfo) -> None:
        await self._call("EnsureIndexCreated", {"repository": repository.to_wire()})

    async def sync_complete(self, request: SyncCompleteRequest) -> None:
        entry = request.to_wire()
        entry["status"] = "STATUS_SUCCESS"
        await self._call("FastRepoSyncComplete", {"codebases": [entry]})
