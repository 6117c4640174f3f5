"""Pydantic base schema shared by orchestration models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """
    Base Pydantic model for all orchestration schemas.

    - ``populate_by_name=True``: allow initialization by alias or field name.
    - ``extra="forbid"``: reject unknown fields.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="forbid",
    )
