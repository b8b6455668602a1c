"""Request and response shapes for the remote index service.

Field names are snake_case in Python and camelCase on the wire.  Only the
logical content matters to the engine; framing is the client's concern.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from quietsync.sync_engine.models.enums import CodebaseStatus

SIMILARITY_METRIC_TYPE = "SIMILARITY_METRIC_TYPE_SIMHASH"
PATH_KEY_HASH_TYPE = "PATH_KEY_HASH_TYPE_SHA256"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# -- Requests ----------------------------------------------------------------


class RepositoryInfo(WireModel):
    relative_workspace_path: str = "."
    is_tracked: bool = False
    is_local: bool = True
    num_files: int = 0
    orthogonal_transform_seed: int = 0
    preferred_embedding_model: str = "EMBEDDING_MODEL_UNSPECIFIED"
    workspace_uri: str = ""
    repo_name: str
    repo_owner: str
    remote_urls: list[str] = Field(default_factory=list)
    remote_names: list[str] = Field(default_factory=list)


class HandshakeRequest(WireModel):
    repository: RepositoryInfo
    root_hash: str
    similarity_metric_type: str = SIMILARITY_METRIC_TYPE
    similarity_metric: list[float]
    path_key_hash: str
    path_key_hash_type: str = PATH_KEY_HASH_TYPE
    path_key: str


class DiffNodeRequest(WireModel):
    codebase_id: str
    orthogonal_transform_seed: int
    encrypted_path: str
    hash_of_node: str


class UploadFileRequest(WireModel):
    codebase_id: str
    orthogonal_transform_seed: int
    encrypted_path: str
    contents: str
    content_hash: str
    ancestor_paths: list[str] = Field(default_factory=list)
    """Encrypted ancestor chain, outermost first."""


class SyncCompleteRequest(WireModel):
    codebase_id: str
    similarity_metric_type: str = SIMILARITY_METRIC_TYPE
    similarity_metric: list[float]
    path_key_hash: str
    path_key_hash_type: str = PATH_KEY_HASH_TYPE


# -- Responses ---------------------------------------------------------------


class HandshakeResult(BaseModel):
    codebase_id: str
    status: CodebaseStatus = CodebaseStatus.UNSPECIFIED


class NodeHint(BaseModel):
    """One child of a mismatched node, as the service knows it."""

    encrypted_path: str
    hash_of_node: str = ""


class DiffNodeResult(BaseModel):
    match: bool
    children: list[NodeHint] = Field(default_factory=list)
