"""
storegate/schema.py
-----------------------------------------------------------------------------
Pydantic v2 models for every request / response object in the gateway API.

Design principles
-----------------
• Keep models thin – no I/O here; validation only.
• Every field has a `description` so FastAPI's generated OpenAPI page is
  immediately useful to whoever wires an agent or client against it.
• Upload requests carry exactly one content source: inline base-64 ``file``
  or a ``url`` to fetch.  Both or neither is a validation error.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator

from storegate.codec import is_base64

# -----------------------------------------------------------------------------
# /api/upload  request / response
# -----------------------------------------------------------------------------


class UploadRequest(BaseModel):
    """
    Request body for POST /api/upload.

    The file name should include its extension (e.g. ``document.pdf``) so the
    MIME type of inline uploads can be inferred.
    """

    file: str | None = Field(
        default=None,
        description="The content of the file encoded as a base64 string.",
    )
    url: str | None = Field(
        default=None,
        description="URL to fetch the file from (alternative to providing file content).",
        examples=["https://example.com/report.pdf"],
    )
    name: str = Field(
        ...,
        description="Name for the uploaded file (must include file extension for MIME type detection).",
        examples=["document.pdf"],
    )
    delegation: str | None = Field(
        default=None,
        description="Delegation proof (optional, the server delegation is used if omitted).",
    )
    gateway_url: str | None = Field(
        default=None,
        description="Custom gateway URL (optional, the default gateway is used if omitted).",
    )
    publish_to_filecoin: bool = Field(
        default=False,
        description=(
            "Publish the file to the Filecoin network, making it publicly "
            "accessible.  When false the file stays within the storage network."
        ),
    )
    mime_type: str | None = Field(
        default=None,
        description="Optional MIME type override (only used with URL uploads).",
    )

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be empty or whitespace")
        return v

    @field_validator("file")
    @classmethod
    def file_is_base64(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v:
            raise ValueError("File content cannot be empty")
        if not is_base64(v):
            raise ValueError("Invalid base64 format")
        return v

    @model_validator(mode="after")
    def exactly_one_source(self) -> UploadRequest:
        """Exactly one of ``file`` or ``url`` must be present."""
        if bool(self.file) == bool(self.url):
            raise ValueError("Either file content or URL must be provided, but not both")
        return self


class UploadResponse(BaseModel):
    root: str = Field(..., description="Root CID of the directory containing the upload.")
    url: str = Field(..., description="Gateway URL of the uploaded directory.")
    files: dict[str, str] = Field(
        default_factory=dict,
        description="Map of uploaded file name → CID.",
    )


# -----------------------------------------------------------------------------
# /api/retrieve  request / response
# -----------------------------------------------------------------------------


class RetrieveRequest(BaseModel):
    filepath: str = Field(
        ...,
        description='Path in the format "cid/filename", "/ipfs/cid/filename" or "ipfs://cid/filename".',
        examples=["bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi/readme.txt"],
    )
    use_multiformat_base64: bool = Field(
        default=False,
        description="Return multibase base64 (``m`` prefix) instead of standard base64.",
    )


class RetrieveResponse(BaseModel):
    data: str = Field(..., description="Base64 encoded file data.")
    mime_type: str | None = Field(default=None, description="MIME type of the file, when known.")


# -----------------------------------------------------------------------------
# Errors / health
# -----------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    name: str = "StoreGateError"
    kind: str
    message: str
    cause: str | None = None


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    connected: bool
