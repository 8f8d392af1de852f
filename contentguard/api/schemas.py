from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


#input to be screened
class CheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: Optional[str] = Field(default=None, description="Text to screen")
    policy_id: Optional[int] = Field(default=None, alias="policyId", description="Explicit policy; else the agent binding")
    scene: Optional[str] = Field(default=None, description="Scene used to pick the agent binding")
    route_key: Optional[str] = Field(default=None, alias="routeKey", description="Stable caller key for gray routing")
    disable_l3: bool = Field(default=False, alias="disableL3", description="Skip tier three for this call")


class BatchCheckItem(CheckRequest):
    item_id: str = Field(..., alias="itemId")


# output to be returned
class CheckResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    verdict: str  # ALLOW | REVIEW | BLOCK | REDACTED
    categories: List[str] = Field(default_factory=list)
    sanitized_text: Optional[str] = Field(default=None, alias="sanitizedText")


class BatchCheckResult(CheckResponse):
    item_id: str = Field(..., alias="itemId")
    error: Optional[str] = None


class StatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    strategy: str
    enabled_modes: List[str] = Field(alias="enabledModes")
    llm_provider: Optional[str] = Field(default=None, alias="llmProvider")
    llm_available: bool = Field(alias="llmAvailable")
    l2_provider: str = Field(alias="l2Provider")
    batch_enabled: bool = Field(alias="batchEnabled")
    governance_enabled: bool = Field(alias="governanceEnabled")
    regex_packs: List[str] = Field(default_factory=list, alias="regexPacks")
    preferred_mode: Optional[str] = Field(default=None, alias="preferredMode")
