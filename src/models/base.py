"""Shared Pydantic base models and utilities."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HealthSyncBase(BaseModel):
    """Base model with shared config for all HealthSync schemas.

    Wire names are camelCase (the mobile client's convention); Python
    attributes stay snake_case and either form is accepted on input.
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )
