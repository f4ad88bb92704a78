"""
Tests for the resolution arbiter: exactly-once application, race handling,
rejections and side-effect rollback.
"""

import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, func

from paycore.clock import utcnow, as_utc
from paycore.config import settings
from paycore.exceptions import TransactionNotFound, SideEffectError
from paycore.fsm.states import (
    ResolutionMethod,
    ResolutionOutcome,
    SessionStatus,
    SubscriptionStatus,
    TransactionStatus,
)
from paycore.models.catalog import Coupon, Subscription
from paycore.models.customer_token import CustomerToken
from paycore.models.payment_session import PaymentSession
from paycore.models.purchase import Purchase
from paycore.models.transaction import Transaction
from paycore.services.alert_service import AlertKind
from paycore.services.resolution_service import ResolutionArbiter
from paycore.services.side_effects import SideEffectApplier


async def _load(session_factory, transaction_id):
    async with session_factory() as db:
        transaction = await db.get(Transaction, transaction_id)
        session = await db.get(PaymentSession, transaction.session_id)
        purchases = (await db.execute(
            select(Purchase).where(Purchase.transaction_id == transaction_id)
        )).scalars().all()
    return transaction, session, list(purchases)


class TestApply:

    @pytest.mark.asyncio
    async def test_completed_grants_one_purchase_per_intent(self, session_factory, make_product, make_checkout, alerts):
        course = await make_product("course", "100.00")
        workshop = await make_product("workshop", "50.00", title="Live Workshop")
        transaction = await make_checkout(products=[course, workshop])

        result = await ResolutionArbiter(session_factory, alerts).resolve(
            transaction.id,
            "completed",
            ResolutionMethod.WEBHOOK,
            provider_payload={"transaction": {"uid": "pp-1"}},
            provider_transaction_uid="pp-1",
        )

        assert result.outcome == ResolutionOutcome.APPLIED
        assert result.applied
        assert result.resolution_method == "webhook"

        stored, session, purchases = await _load(session_factory, transaction.id)
        assert stored.status == TransactionStatus.COMPLETED.value
        assert stored.resolution_method == ResolutionMethod.WEBHOOK.value
        assert stored.provider_transaction_uid == "pp-1"
        assert stored.provider_response == {"transaction": {"uid": "pp-1"}}
        assert stored.completed_at is not None
        assert stored.resolved_at is not None
        assert session.session_status == SessionStatus.COMPLETED.value
        assert session.completed_at is not None

        assert {(p.entity_type, p.entity_id) for p in purchases} == {
            ("course", course.id),
            ("workshop", workshop.id),
        }
        assert all(p.resolution_method == "webhook" for p in purchases)
        assert all(p.user_id == transaction.user_id for p in purchases)
        assert alerts.sent == []

    @pytest.mark.asyncio
    async def test_access_window_from_product(self, session_factory, make_product, make_checkout, alerts):
        product = await make_product("course", access_days=30)
        transaction = await make_checkout(products=[product])

        await ResolutionArbiter(session_factory, alerts).resolve(transaction.id, "completed", "polling")

        _, _, purchases = await _load(session_factory, transaction.id)
        purchase = purchases[0]
        window = as_utc(purchase.access_until) - as_utc(purchase.access_starts_at)
        assert timedelta(days=29, hours=23) < window <= timedelta(days=30)
        assert purchase.resolution_method == "polling"

    @pytest.mark.asyncio
    async def test_lifetime_access_without_access_days(self, session_factory, make_checkout, alerts):
        transaction = await make_checkout()

        await ResolutionArbiter(session_factory, alerts).resolve(transaction.id, "completed", "webhook")

        _, _, purchases = await _load(session_factory, transaction.id)
        assert purchases[0].access_until is None

    @pytest.mark.asyncio
    async def test_failed_records_reason_and_grants_nothing(self, session_factory, make_checkout, alerts):
        transaction = await make_checkout()

        result = await ResolutionArbiter(session_factory, alerts).resolve(
            transaction.id, "failed", ResolutionMethod.WEBHOOK, failure_reason="Card declined",
        )

        assert result.applied
        stored, session, purchases = await _load(session_factory, transaction.id)
        assert stored.status == "failed"
        assert stored.failure_reason == "Card declined"
        assert session.session_status == SessionStatus.FAILED.value
        assert session.error_message == "Card declined"
        assert purchases == []

    @pytest.mark.asyncio
    async def test_cancelled_projects_onto_session(self, session_factory, make_checkout, alerts):
        transaction = await make_checkout()

        await ResolutionArbiter(session_factory, alerts).resolve(transaction.id, "cancelled", "webhook")

        stored, session, _ = await _load(session_factory, transaction.id)
        assert stored.status == "cancelled"
        assert session.session_status == SessionStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_coupon_usage_counted_once(self, session_factory, make_checkout, make_coupon, alerts):
        await make_coupon("WELCOME10", "10")
        transaction = await make_checkout(applied_coupons=[{"code": "WELCOME10", "discount_amount": "10.00"}])
        arbiter = ResolutionArbiter(session_factory, alerts)

        await arbiter.resolve(transaction.id, "completed", "webhook")
        await arbiter.resolve(transaction.id, "completed", "polling")

        async with session_factory() as db:
            coupon = (await db.execute(select(Coupon).where(Coupon.code == "WELCOME10"))).scalar_one()
        assert coupon.usage_count == 1

    @pytest.mark.asyncio
    async def test_unknown_transaction_raises(self, session_factory, alerts):
        with pytest.raises(TransactionNotFound):
            await ResolutionArbiter(session_factory, alerts).resolve(uuid.uuid4(), "completed", "webhook")


class TestDuplicatesAndRejections:

    @pytest.mark.asyncio
    async def test_same_status_twice_is_duplicate(self, session_factory, make_checkout, alerts):
        transaction = await make_checkout()
        arbiter = ResolutionArbiter(session_factory, alerts)

        first = await arbiter.resolve(transaction.id, "completed", "webhook")
        second = await arbiter.resolve(transaction.id, "completed", "polling")

        assert first.outcome == ResolutionOutcome.APPLIED
        assert second.outcome == ResolutionOutcome.DUPLICATE
        assert second.resolution_method == "webhook"

        stored, _, purchases = await _load(session_factory, transaction.id)
        assert stored.resolution_method == "webhook"
        assert len(purchases) == 1
        assert alerts.sent == []

    @pytest.mark.asyncio
    async def test_conflicting_terminal_report_is_rejected(self, session_factory, make_checkout, alerts):
        transaction = await make_checkout()
        arbiter = ResolutionArbiter(session_factory, alerts)
        await arbiter.resolve(transaction.id, "completed", "webhook")

        result = await arbiter.resolve(transaction.id, "failed", "polling")

        assert result.outcome == ResolutionOutcome.REJECTED
        assert result.status == "completed"
        stored, _, purchases = await _load(session_factory, transaction.id)
        assert stored.status == "completed"
        assert len(purchases) == 1
        assert alerts.kinds == [AlertKind.REJECTED_RESOLUTION]
        assert alerts.sent[0]["transaction_id"] == str(transaction.id)

    @pytest.mark.parametrize("reported", ["chargeback", "pending", "refunded"])
    @pytest.mark.asyncio
    async def test_illegal_status_leaves_transaction_pending(self, session_factory, make_checkout, alerts, reported):
        transaction = await make_checkout()

        result = await ResolutionArbiter(session_factory, alerts).resolve(transaction.id, reported, "webhook")

        assert result.outcome == ResolutionOutcome.REJECTED
        stored, session, purchases = await _load(session_factory, transaction.id)
        assert stored.status == "pending"
        assert stored.resolution_method is None
        assert session.session_status == SessionStatus.CREATED.value
        assert purchases == []
        assert alerts.kinds == [AlertKind.REJECTED_RESOLUTION]


class TestRace:

    @pytest.mark.asyncio
    async def test_concurrent_agreeing_reports_apply_once(self, session_factory, make_product, make_checkout, alerts):
        products = [await make_product("course"), await make_product("game", "20.00")]
        transaction = await make_checkout(products=products)
        arbiter = ResolutionArbiter(session_factory, alerts)

        results = await asyncio.gather(
            arbiter.resolve(transaction.id, "completed", ResolutionMethod.WEBHOOK),
            arbiter.resolve(transaction.id, "completed", ResolutionMethod.POLLING),
        )

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["applied", "duplicate"]

        winner = next(r for r in results if r.applied)
        stored, _, purchases = await _load(session_factory, transaction.id)
        assert stored.status == "completed"
        assert stored.resolution_method == winner.resolution_method
        assert len(purchases) == 2

    @pytest.mark.asyncio
    async def test_concurrent_conflicting_reports_first_wins(self, session_factory, make_checkout, alerts):
        transaction = await make_checkout()
        arbiter = ResolutionArbiter(session_factory, alerts)

        results = await asyncio.gather(
            arbiter.resolve(transaction.id, "completed", ResolutionMethod.WEBHOOK),
            arbiter.resolve(transaction.id, "failed", ResolutionMethod.POLLING),
        )

        applied = [r for r in results if r.applied]
        rejected = [r for r in results if r.outcome == ResolutionOutcome.REJECTED]
        assert len(applied) == 1
        assert len(rejected) == 1

        stored, _, purchases = await _load(session_factory, transaction.id)
        assert stored.status == applied[0].status
        assert len(purchases) == (1 if stored.status == "completed" else 0)
        assert alerts.kinds == [AlertKind.REJECTED_RESOLUTION]


class TestSideEffectFailure:

    @pytest.mark.asyncio
    async def test_failure_rolls_back_status(self, session_factory, make_checkout, alerts):
        transaction = await make_checkout()
        arbiter = ResolutionArbiter(session_factory, alerts)

        with patch.object(SideEffectApplier, "apply", new=AsyncMock(side_effect=RuntimeError("entitlement store down"))):
            with pytest.raises(SideEffectError, match="entitlement store down"):
                await arbiter.resolve(transaction.id, "completed", "webhook")

        stored, session, purchases = await _load(session_factory, transaction.id)
        assert stored.status == "pending"
        assert stored.resolution_method is None
        assert session.session_status == SessionStatus.CREATED.value
        assert purchases == []
        assert alerts.kinds == [AlertKind.SIDE_EFFECT_FAILED]

        # A later report applies normally
        retry = await arbiter.resolve(transaction.id, "completed", "polling")
        assert retry.applied
        _, _, purchases = await _load(session_factory, transaction.id)
        assert len(purchases) == 1


class TestLateResolution:

    @pytest.mark.asyncio
    async def test_grant_policy_applies_after_expiry(self, session_factory, make_checkout, alerts, monkeypatch):
        monkeypatch.setattr(settings, "late_resolution_policy", "grant")
        transaction = await make_checkout(
            expires_at=utcnow() - timedelta(minutes=5),
            session_status=SessionStatus.EXPIRED.value,
        )

        result = await ResolutionArbiter(session_factory, alerts).resolve(transaction.id, "completed", "webhook")

        assert result.applied
        _, session, purchases = await _load(session_factory, transaction.id)
        assert session.session_status == SessionStatus.COMPLETED.value
        assert len(purchases) == 1
        assert alerts.sent == []

    @pytest.mark.asyncio
    async def test_manual_review_policy_holds_late_result(self, session_factory, make_checkout, alerts, monkeypatch):
        monkeypatch.setattr(settings, "late_resolution_policy", "manual_review")
        transaction = await make_checkout(expires_at=utcnow() - timedelta(minutes=5))

        result = await ResolutionArbiter(session_factory, alerts).resolve(transaction.id, "completed", "webhook")

        assert result.outcome == ResolutionOutcome.REJECTED
        stored, _, purchases = await _load(session_factory, transaction.id)
        assert stored.status == "pending"
        assert purchases == []
        assert alerts.kinds == [AlertKind.LATE_RESOLUTION]


class TestSubscriptionCheckout:

    async def _subscription_checkout(self, session_factory, make_product, make_checkout, user_id):
        plan = await make_product("subscription_plan", "49.00", title="Monthly")
        subscription_id = uuid.uuid4()
        async with session_factory() as db:
            db.add(Subscription(id=subscription_id, user_id=user_id, plan_id=plan.id))
            await db.commit()
        transaction = await make_checkout(user_id=user_id, products=[plan], subscription_id=subscription_id)
        return transaction, subscription_id

    @pytest.mark.asyncio
    async def test_completed_activates_and_stores_card(self, session_factory, make_product, make_checkout, alerts):
        user_id = uuid.uuid4()
        transaction, subscription_id = await self._subscription_checkout(
            session_factory, make_product, make_checkout, user_id,
        )
        payload = {
            "transaction": {"uid": "pp-9", "token_uid": "tok_abcdef123456"},
            "card": {"last_4": "4242", "brand": "Visa", "exp_month": "12", "exp_year": "2030"},
        }

        await ResolutionArbiter(session_factory, alerts).resolve(
            transaction.id, "completed", "webhook", provider_payload=payload,
        )

        async with session_factory() as db:
            subscription = await db.get(Subscription, subscription_id)
            tokens = (await db.execute(
                select(CustomerToken).where(CustomerToken.user_id == user_id)
            )).scalars().all()

        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.activated_at is not None
        assert len(tokens) == 1
        assert tokens[0].card_mask == "****4242"
        assert tokens[0].card_brand == "visa"
        assert tokens[0].is_default

    @pytest.mark.asyncio
    async def test_failed_marks_subscription_failed(self, session_factory, make_product, make_checkout, alerts):
        transaction, subscription_id = await self._subscription_checkout(
            session_factory, make_product, make_checkout, uuid.uuid4(),
        )

        await ResolutionArbiter(session_factory, alerts).resolve(
            transaction.id, "failed", "polling", failure_reason="Insufficient funds",
        )

        async with session_factory() as db:
            subscription = await db.get(Subscription, subscription_id)
            count = (await db.execute(select(func.count(CustomerToken.id)))).scalar_one()

        assert subscription.status == SubscriptionStatus.FAILED.value
        assert subscription.failure_reason == "Insufficient funds"
        assert count == 0
