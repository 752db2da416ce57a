"""Pydantic base schemas shared by all GOI engine models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """
    Base Pydantic model for engine-owned state.

    - ``populate_by_name=True``: accept camelCase aliases as well as field names.
    - ``extra="forbid"``: unknown fields are a validation error.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="forbid",
    )


class ExternalSchema(BaseModel):
    """
    Base model for payloads produced outside the engine (LLM output, API input).

    Unknown keys are ignored instead of rejected, since model output routinely
    carries additional commentary fields.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
    )
