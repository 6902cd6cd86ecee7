from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from lotwise.db.models import HarvestSettingsSet

logger = logging.getLogger(__name__)


class HarvestConfig(BaseModel):
    wash_sale_days: int = Field(default=30, ge=0)
    long_term_days: int = Field(default=365, ge=0)
    minimum_loss_threshold: Decimal = Field(default=Decimal("100.00"), ge=0)
    marginal_tax_rate: Decimal = Field(default=Decimal("0.22"), ge=0, le=1)
    substantially_identical_threshold: Decimal = Field(default=Decimal("0.9"), ge=0, le=1)
    wash_risk_priority_factor: Decimal = Field(default=Decimal("0.5"), ge=0, le=1)
    recent_window_days: int = Field(default=60, ge=0)
    min_suitability_score: Decimal = Field(default=Decimal("0.7"), ge=0, le=1)
    max_replacements: int = Field(default=5, ge=0)

    model_config = {"frozen": True}

    @property
    def safe_offset_days(self) -> int:
        # First day outside the window after a purchase.
        return self.wash_sale_days + 1

    def as_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def get_or_create_harvest_config(session: Session) -> HarvestConfig:
    row = session.query(HarvestSettingsSet).filter(HarvestSettingsSet.name == "Default").one_or_none()
    if row is None:
        row = HarvestSettingsSet(
            name="Default",
            effective_date=dt.date.today(),
            json_definition=HarvestConfig().as_json(),
        )
        session.add(row)
        session.flush()
    try:
        return HarvestConfig.model_validate(row.json_definition or {})
    except ValidationError as e:
        logger.warning("Invalid harvest settings %r; using defaults (%s)", row.name, e.error_count())
        return HarvestConfig()
