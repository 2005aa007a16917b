from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from livestream_proxy.configs import LiveSourceConfig


class GenericParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProxyParams(GenericParams):
    url: str = Field(..., description="The decoded upstream URL to fetch.")
    source_key: Optional[str] = Field(None, description="The live source key.", alias="moontv-source")


class ManifestParams(ProxyParams):
    allow_cors: bool = Field(
        False,
        description="Emit resolved upstream segment URLs directly instead of routing them through the proxy.",
        alias="allowCORS",
    )


class PrecheckResponse(BaseModel):
    success: bool = True
    type: str = Field(..., description="The detected stream type: mp4, flv or m3u8.")


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None


class LiveSourcesResponse(BaseModel):
    success: bool = True
    data: List[LiveSourceConfig]
