"""
Distributor pricing tiers.

PricingTierEditor is an in-memory working copy of distributor rows: tier
changes mark a row as modified, and only modified rows are handed to
DistributorService.save_tiers.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from finishing_crm.lib.links import portal_path
from finishing_crm.lib.logging import get_logger
from finishing_crm.models.distributors import Distributor, PricingTier
from finishing_crm.services.errors import DistributorSelectionError, InvalidRequestError, NotFoundError

logger = get_logger(__name__)


@dataclass
class DistributorRow:
    code: str
    company_name: str
    pricing_tier: Optional[PricingTier] = None
    country: Optional[str] = None

    @property
    def portal_path(self) -> str:
        return portal_path(self.code)


def parse_tier(tier: Union[PricingTier, str]) -> PricingTier:
    try:
        return PricingTier(tier)
    except ValueError:
        raise InvalidRequestError(
            f"Unknown pricing tier: {tier}",
            {"allowed": [t.value for t in PricingTier]},
        ) from None


class PricingTierEditor:
    """Working copy of distributor tiers with modified-row tracking."""

    def __init__(self, rows: Iterable[DistributorRow]):
        self.rows: Dict[str, DistributorRow] = {row.code: row for row in rows}
        self.modified_codes: set[str] = set()

    def set_tier(self, code: str, tier: Union[PricingTier, str]) -> None:
        if code not in self.rows:
            raise NotFoundError("Distributor", code)
        self.rows[code].pricing_tier = parse_tier(tier)
        self.modified_codes.add(code)

    def bulk_set_tier(self, selected_codes: Sequence[str], tier: Union[PricingTier, str]) -> None:
        """
        Apply one tier to every selected distributor.

        Raises:
            DistributorSelectionError: Nothing selected
        """
        if not selected_codes:
            raise DistributorSelectionError("Select distributors first")
        parsed = parse_tier(tier)
        for code in selected_codes:
            self.set_tier(code, parsed)

    def modified_rows(self) -> List[DistributorRow]:
        return [self.rows[code] for code in sorted(self.modified_codes)]

    def clear_modified(self) -> None:
        self.modified_codes.clear()


class DistributorService:
    def __init__(self, db: Session):
        self.db = db

    def list_distributors(self, tier: Optional[str] = None, country: Optional[str] = None) -> List[Distributor]:
        stmt = select(Distributor).order_by(Distributor.company_name)
        if tier:
            stmt = stmt.where(Distributor.pricing_tier == parse_tier(tier))
        if country:
            stmt = stmt.where(Distributor.country == country)
        return list(self.db.execute(stmt).scalars().all())

    def editor(self) -> PricingTierEditor:
        return PricingTierEditor(
            DistributorRow(
                code=d.code,
                company_name=d.company_name,
                pricing_tier=d.pricing_tier,
                country=d.country,
            )
            for d in self.list_distributors()
        )

    def save_tiers(self, rows: Iterable[DistributorRow]) -> Dict[str, object]:
        """
        Persist tiers for exactly the rows given.

        Returns:
            {"updated": int, "unknown_codes": [...]}
        """
        rows = list(rows)
        codes = [row.code for row in rows]
        existing = {
            d.code: d
            for d in self.db.execute(select(Distributor).where(Distributor.code.in_(codes))).scalars().all()
        }

        updated = 0
        unknown: List[str] = []
        for row in rows:
            distributor = existing.get(row.code)
            if distributor is None:
                unknown.append(row.code)
                continue
            distributor.pricing_tier = parse_tier(row.pricing_tier) if row.pricing_tier else None
            updated += 1
        self.db.commit()

        logger.info("Distributor tiers saved", extra={"updated": updated, "unknown_codes": unknown})
        return {"updated": updated, "unknown_codes": unknown}
