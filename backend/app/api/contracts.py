from pydantic import BaseModel, Field


class GenerateClientsRequest(BaseModel):
    client_ids: list[str] = Field(..., min_length=1, max_length=100)


class MonitorSettingsUpdate(BaseModel):
    is_enabled: bool | None = None
    agency_slugs: list[str] | None = None
    document_types: list[str] | None = None
    only_significant: bool | None = None
    auto_process_new: bool | None = None
    initial_document_count: int | None = Field(default=None, ge=1, le=100)
    poll_document_count: int | None = Field(default=None, ge=1, le=1000)


class CostEstimate(BaseModel):
    client_count: int
    base_cost: float
    client_cost: float
    total: float
