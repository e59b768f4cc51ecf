"""Base schemas and common types for the CRM Alerts API."""

from pydantic import BaseModel, ConfigDict


# =============================================================================
# BASE SCHEMAS
# =============================================================================


class PipelineBaseModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,  # Enable ORM mode
        populate_by_name=True,
        use_enum_values=True,
    )


# =============================================================================
# ERROR RESPONSES
# =============================================================================


class ErrorResponse(PipelineBaseModel):
    """Error envelope returned by every handler."""

    error: str
