"""
Tests for coupon validation and stacking.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from paycore.clock import utcnow
from paycore.exceptions import CouponRejected
from paycore.models.catalog import Coupon
from paycore.services.coupon_service import CouponService


@pytest.mark.asyncio
async def test_no_codes_means_no_discount(db):
    application = await CouponService(db).apply([], ["course"], Decimal("100.00"))

    assert application.discount_amount == Decimal("0")
    assert application.final_amount == Decimal("100.00")
    assert application.applied_coupons == []


class TestStacking:

    @pytest.mark.asyncio
    async def test_percentage_then_fixed_by_priority(self, db, make_coupon):
        await make_coupon("TENOFF", "10", priority_level=1)
        await make_coupon("MINUS20", "20", discount_type="fixed", priority_level=2)

        application = await CouponService(db).apply(["MINUS20", "TENOFF"], ["course"], Decimal("200.00"))

        assert [c["code"] for c in application.applied_coupons] == ["TENOFF", "MINUS20"]
        assert application.discount_amount == Decimal("40.00")
        assert application.final_amount == Decimal("160.00")

    @pytest.mark.asyncio
    async def test_percentage_acts_on_remaining_amount(self, db, make_coupon):
        await make_coupon("MINUS20", "20", discount_type="fixed", priority_level=1)
        await make_coupon("TENOFF", "10", priority_level=2)

        application = await CouponService(db).apply(["TENOFF", "MINUS20"], ["course"], Decimal("200.00"))

        assert application.discount_amount == Decimal("38.00")
        assert application.final_amount == Decimal("162.00")

    @pytest.mark.asyncio
    async def test_cap_limits_discount(self, db, make_coupon):
        await make_coupon("HALF", "50", max_discount_cap=Decimal("30"))

        application = await CouponService(db).apply(["HALF"], ["course"], Decimal("100.00"))

        assert application.discount_amount == Decimal("30")
        assert application.final_amount == Decimal("70.00")

    @pytest.mark.asyncio
    async def test_discount_never_exceeds_amount(self, db, make_coupon):
        await make_coupon("BIG", "500", discount_type="fixed")

        application = await CouponService(db).apply(["BIG"], ["course"], Decimal("100.00"))

        assert application.discount_amount == Decimal("100.00")
        assert application.final_amount == Decimal("0")

    @pytest.mark.asyncio
    async def test_percentage_is_rounded_to_cents(self, db, make_coupon):
        await make_coupon("THIRD", "33.33")

        application = await CouponService(db).apply(["THIRD"], ["course"], Decimal("10.00"))

        assert application.discount_amount == Decimal("3.33")

    @pytest.mark.asyncio
    async def test_stackable_with_restricts_combinations(self, db, make_coupon):
        await make_coupon("VIP", "10", stackable_with=["PARTNER"])
        await make_coupon("SPRING", "5")

        with pytest.raises(CouponRejected, match="can only be stacked"):
            await CouponService(db).apply(["VIP", "SPRING"], ["course"], Decimal("100.00"))

    @pytest.mark.asyncio
    async def test_stackable_with_allows_listed_code(self, db, make_coupon):
        await make_coupon("VIP", "10", stackable_with=["PARTNER"])
        await make_coupon("PARTNER", "5", discount_type="fixed")

        application = await CouponService(db).apply(["VIP", "PARTNER"], ["course"], Decimal("100.00"))

        assert len(application.applied_coupons) == 2


class TestValidation:

    @pytest.mark.asyncio
    async def test_unknown_code(self, db):
        with pytest.raises(CouponRejected) as exc_info:
            await CouponService(db).apply(["GHOST"], ["course"], Decimal("100.00"))
        assert exc_info.value.code == "GHOST"

    @pytest.mark.asyncio
    async def test_inactive_code_is_unknown(self, db, make_coupon):
        await make_coupon("OLD", "10", is_active=False)
        with pytest.raises(CouponRejected, match="Invalid coupon codes"):
            await CouponService(db).apply(["OLD"], ["course"], Decimal("100.00"))

    @pytest.mark.asyncio
    async def test_duplicate_codes(self, db, make_coupon):
        await make_coupon("ONCE", "10")
        with pytest.raises(CouponRejected, match="Duplicate"):
            await CouponService(db).apply(["ONCE", "ONCE"], ["course"], Decimal("100.00"))

    @pytest.mark.asyncio
    async def test_expired(self, db, make_coupon):
        await make_coupon("GONE", "10", valid_until=utcnow() - timedelta(days=1))
        with pytest.raises(CouponRejected, match="expired"):
            await CouponService(db).apply(["GONE"], ["course"], Decimal("100.00"))

    @pytest.mark.asyncio
    async def test_usage_limit(self, db, make_coupon):
        await make_coupon("LIMITED", "10", usage_limit=5, usage_count=5)
        with pytest.raises(CouponRejected, match="usage limit"):
            await CouponService(db).apply(["LIMITED"], ["course"], Decimal("100.00"))

    @pytest.mark.asyncio
    async def test_minimum_amount(self, db, make_coupon):
        await make_coupon("BIGCART", "10", minimum_amount=Decimal("150"))
        with pytest.raises(CouponRejected, match="minimum"):
            await CouponService(db).apply(["BIGCART"], ["course"], Decimal("100.00"))

    @pytest.mark.asyncio
    async def test_target_entity_types(self, db, make_coupon):
        await make_coupon("GAMESONLY", "10", target_entity_types=["game"])
        with pytest.raises(CouponRejected, match="does not apply"):
            await CouponService(db).apply(["GAMESONLY"], ["course", "workshop"], Decimal("100.00"))


@pytest.mark.asyncio
async def test_record_usage_increments(db, make_coupon):
    await make_coupon("COUNTME", "10", usage_count=2)

    await CouponService(db).record_usage([{"code": "COUNTME"}, {"discount_amount": "1"}])
    await db.commit()

    coupon = (await db.execute(select(Coupon).where(Coupon.code == "COUNTME"))).scalar_one()
    assert coupon.usage_count == 3
