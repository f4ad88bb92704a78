"""
Coupon Service - coupon validation and stacked discount calculation.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Dict, Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.clock import utcnow, as_utc
from paycore.exceptions import CouponRejected
from paycore.fsm.states import DiscountType
from paycore.models.catalog import Coupon

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class CouponApplication:
    """Outcome of applying a set of coupons to a checkout."""

    original_amount: Decimal
    discount_amount: Decimal = Decimal("0")
    applied_coupons: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def final_amount(self) -> Decimal:
        return max(self.original_amount - self.discount_amount, Decimal("0"))


class CouponService:
    """Validate coupon codes and compute the combined discount."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def apply(
        self,
        codes: Sequence[str],
        entity_types: Sequence[str],
        subtotal: Decimal,
    ) -> CouponApplication:
        """
        Validate every code and stack the discounts.

        Any invalid code rejects the whole checkout.
        """
        codes = [c.strip() for c in codes if c and c.strip()]
        if not codes:
            return CouponApplication(original_amount=subtotal)

        if len(set(codes)) != len(codes):
            raise CouponRejected("Duplicate coupon codes")

        result = await self.db.execute(
            select(Coupon).where(Coupon.code.in_(codes), Coupon.is_active.is_(True))
        )
        coupons = list(result.scalars().all())

        found = {c.code for c in coupons}
        missing = [code for code in codes if code not in found]
        if missing:
            raise CouponRejected(f"Invalid coupon codes: {', '.join(missing)}", code=missing[0])

        self._check_stacking(coupons)
        for coupon in coupons:
            self._check_applicable(coupon, entity_types, subtotal)

        return self._stack(coupons, subtotal)

    @staticmethod
    def _check_stacking(coupons: List[Coupon]) -> None:
        """A coupon with a stackable_with list only combines with those codes."""
        for coupon in coupons:
            allowed = coupon.stackable_with or []
            if not allowed:
                continue
            others = [c.code for c in coupons if c.id != coupon.id]
            if any(code not in allowed for code in others):
                raise CouponRejected(
                    f"Coupon {coupon.code} can only be stacked with: {', '.join(allowed)}",
                    code=coupon.code,
                )

    @staticmethod
    def _check_applicable(coupon: Coupon, entity_types: Sequence[str], subtotal: Decimal) -> None:
        if coupon.valid_until and as_utc(coupon.valid_until) <= utcnow():
            raise CouponRejected(f"Coupon {coupon.code} has expired", code=coupon.code)

        if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
            raise CouponRejected(f"Coupon {coupon.code} usage limit reached", code=coupon.code)

        if coupon.minimum_amount is not None and subtotal < coupon.minimum_amount:
            raise CouponRejected(
                f"Coupon {coupon.code} requires a minimum of {coupon.minimum_amount}",
                code=coupon.code,
            )

        targets = coupon.target_entity_types or []
        if targets and not any(t in targets for t in entity_types):
            raise CouponRejected(f"Coupon {coupon.code} does not apply to these items", code=coupon.code)

    @staticmethod
    def _stack(coupons: List[Coupon], subtotal: Decimal) -> CouponApplication:
        """Apply in priority order; percentages act on the remaining amount."""
        application = CouponApplication(original_amount=subtotal)
        remaining = subtotal

        for coupon in sorted(coupons, key=lambda c: c.priority_level):
            value = Decimal(coupon.discount_value)
            if coupon.discount_type == DiscountType.PERCENTAGE.value:
                discount = (remaining * value / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
            else:
                discount = value

            if coupon.max_discount_cap is not None:
                discount = min(discount, Decimal(coupon.max_discount_cap))
            discount = min(discount, remaining)

            remaining -= discount
            application.discount_amount += discount
            application.applied_coupons.append({
                "code": coupon.code,
                "coupon_id": str(coupon.id),
                "discount_type": coupon.discount_type,
                "discount_value": str(value),
                "discount_amount": str(discount),
                "priority": coupon.priority_level,
            })

            if remaining <= 0:
                break

        return application

    async def record_usage(self, applied_coupons: List[Dict[str, Any]]) -> None:
        """Count one use of each applied coupon (caller commits)."""
        codes = [c["code"] for c in applied_coupons if c.get("code")]
        if not codes:
            return
        await self.db.execute(
            update(Coupon)
            .where(Coupon.code.in_(codes))
            .values(usage_count=Coupon.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Coupon usage recorded: {', '.join(codes)}")
