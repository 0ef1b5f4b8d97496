"""Reconciliation engine tests (charge, cancellation, idempotency)"""
import json
import pytest
import redis
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from conftest import WEBHOOK_HASH, charge_body
from lnking.core.exceptions import InvalidPayload, Unauthorized, UpstreamUnavailable
from lnking.models import Customer, Workspace
from lnking.schemas.webhook import EventKind, parse_notification
from lnking.services.entitlements import PLAN_CATALOG
from lnking.services.reconciliation_service import Outcome, ReconciliationEngine, process_webhook

FIXED_NOW = datetime(2026, 3, 17, 12, 0, tzinfo=timezone.utc)


def make_engine(**kwargs):
    return ReconciliationEngine(clock=lambda: FIXED_NOW, **kwargs)


def assert_plan(workspace, plan):
    assert workspace.plan == plan
    limits = PLAN_CATALOG[plan]
    assert workspace.usage_limit == limits.usage_limit
    assert workspace.links_limit == limits.links_limit
    assert workspace.domains_limit == limits.domains_limit
    assert workspace.tags_limit == limits.tags_limit
    assert workspace.folders_limit == limits.folders_limit
    assert workspace.users_limit == limits.users_limit
    assert workspace.ai_limit == limits.ai_limit
    assert workspace.sales_limit == limits.sales_limit


@pytest.mark.critical
class TestChargeCompleted:
    """Test charge.completed reconciliation"""

    def test_new_customer_charge_upgrades_and_emits_sale_and_lead(self, db_session, mock_redis, workspace):
        """Custom namespace reference: plan applied, one sale and one lead"""
        event = parse_notification(charge_body(tx_ref="ns_u1_a1_pro_monthly_xyz", flw_ref="flw_1"))
        result = make_engine(namespace="ns").handle(event, db_session)

        assert result.outcome == Outcome.RESOLVED
        db_session.refresh(workspace)
        assert_plan(workspace, "pro")
        assert workspace.flutterwave_subscription_id == "flw_1"
        assert workspace.billing_cycle_start == 17

        job = result.job
        assert job.sale.event_name == "Monthly Subscription"
        assert job.sale.payment_processor == "flutterwave"
        assert job.sale.invoice_id == "flw_1"
        assert job.sale.amount == 10000
        assert job.sale.currency == "NGN"
        assert json.loads(job.sale.metadata) == {
            "tx_ref": "ns_u1_a1_pro_monthly_xyz",
            "flw_ref": "flw_1",
            "planName": "pro",
            "interval": "monthly",
        }
        assert job.lead is not None
        assert job.lead.event_name == "Sign up"
        assert job.lead.event_id != job.sale.event_id
        assert job.lead.invoice_id == job.sale.invoice_id

        customer = db_session.query(Customer).one()
        assert customer.id.startswith("cus_")
        assert customer.email == "buyer@example.com"
        assert customer.external_id == "buyer@example.com"
        assert job.sale.customer_id == customer.id
        assert mock_redis.get("lnking_sale_events:invoiceId:flw_1") == "1"
        assert mock_redis.ttl("lnking_sale_events:invoiceId:flw_1") > 0

    def test_existing_customer_charge_emits_sale_only(self, db_session, mock_redis, workspace):
        db_session.add(Customer(id="cus_existing", workspace_id="a1", name="Old", email=None,
                                external_id="buyer@example.com"))
        db_session.commit()

        event = parse_notification(charge_body(tx_ref="lnking_u1_a1_business_yearly_n1", flw_ref="flw_2"))
        result = make_engine().handle(event, db_session)

        assert result.outcome == Outcome.RESOLVED
        assert result.job.lead is None
        assert result.job.sale.customer_id == "cus_existing"
        assert result.job.sale.event_name == "Yearly Subscription"
        customer = db_session.query(Customer).one()
        assert customer.name == "Ada Buyer"
        assert customer.email == "buyer@example.com"
        db_session.refresh(workspace)
        assert_plan(workspace, "business")

    def test_duplicate_delivery_is_already_processed(self, db_session, mock_redis, workspace):
        """Same notification twice: one downstream job, identical workspace state"""
        engine = make_engine()
        event = parse_notification(charge_body(flw_ref="flw_dup"))

        first = engine.handle(event, db_session)
        db_session.refresh(workspace)
        state_after_first = (workspace.plan, workspace.flutterwave_subscription_id, workspace.links_limit)

        second = engine.handle(event, db_session)
        db_session.refresh(workspace)

        assert first.outcome == Outcome.RESOLVED
        assert first.job is not None
        assert second.outcome == Outcome.ALREADY_PROCESSED
        assert second.job is None
        assert (workspace.plan, workspace.flutterwave_subscription_id, workspace.links_limit) == state_after_first
        assert db_session.query(Customer).count() == 1

    def test_plan_switch_is_total(self, db_session, mock_redis, workspace):
        engine = make_engine()
        engine.handle(parse_notification(charge_body(tx_ref="lnking_u1_a1_businessmax_monthly_a", flw_ref="flw_a")), db_session)
        engine.handle(parse_notification(charge_body(tx_ref="lnking_u1_a1_pro_monthly_b", flw_ref="flw_b")), db_session)

        db_session.refresh(workspace)
        assert_plan(workspace, "pro")
        assert workspace.flutterwave_subscription_id == "flw_b"

    def test_receivers_are_attached_to_job(self, db_session, mock_redis, workspace, workspace_webhook):
        result = make_engine().handle(parse_notification(charge_body()), db_session)
        assert [r.url for r in result.job.receivers] == ["https://merchant.example.com/hooks"]
        assert "sale.created" in result.job.receivers[0].triggers

    def test_numeric_phone_number_does_not_drop_charge(self, db_session, mock_redis, workspace):
        """Unused customer fields with unexpected types must not empty the payload"""
        body = charge_body()
        body["data"]["customer"]["phone_number"] = 2348000000000
        body["data"]["customer"]["id"] = "cus_abc"

        event = parse_notification(body)
        assert event.payload.tx_ref == "lnking_u1_a1_pro_monthly_abc123"
        assert event.payload.customer.email == "buyer@example.com"

        result = make_engine().handle(event, db_session)
        assert result.outcome == Outcome.RESOLVED
        db_session.refresh(workspace)
        assert_plan(workspace, "pro")

    def test_malformed_unused_field_is_dropped_alone(self, db_session, mock_redis, workspace):
        body = charge_body()
        body["data"]["customer"]["name"] = {"first": "Ada"}
        body["data"]["currency"] = ["NGN"]

        event = parse_notification(body)
        assert event.payload.customer.name is None
        assert event.payload.customer.email == "buyer@example.com"
        assert event.payload.currency is None
        assert event.payload.flw_ref == "flw_1"
        assert event.payload.amount == 10000

    def test_charge_without_status_is_applied(self, db_session, mock_redis, workspace):
        body = charge_body()
        del body["data"]["status"]
        result = make_engine().handle(parse_notification(body), db_session)
        assert result.outcome == Outcome.RESOLVED


@pytest.mark.critical
class TestChargeIgnored:
    """Test charges that must be acknowledged without any mutation"""

    @pytest.mark.parametrize("tx_ref", [
        "lnking_u1_a1_pro",
        "other_u1_a1_pro_monthly_x",
        "not-a-reference",
    ])
    def test_malformed_reference_is_ignored(self, db_session, mock_redis, workspace, tx_ref):
        result = make_engine().handle(parse_notification(charge_body(tx_ref=tx_ref)), db_session)

        assert result.outcome == Outcome.IGNORED
        assert result.job is None
        db_session.refresh(workspace)
        assert workspace.plan == "free"
        assert db_session.query(Customer).count() == 0
        assert mock_redis.keys("lnking_sale_events:*") == []

    def test_unknown_account_is_ignored(self, db_session, mock_redis, workspace):
        result = make_engine().handle(
            parse_notification(charge_body(tx_ref="lnking_u1_missing_pro_monthly_x")), db_session
        )
        assert result.outcome == Outcome.IGNORED
        db_session.refresh(workspace)
        assert workspace.plan == "free"
        assert db_session.query(Customer).count() == 0

    def test_unknown_plan_is_ignored(self, db_session, mock_redis, workspace):
        result = make_engine().handle(
            parse_notification(charge_body(tx_ref="lnking_u1_a1_enterprise_monthly_x")), db_session
        )
        assert result.outcome == Outcome.IGNORED
        db_session.refresh(workspace)
        assert workspace.plan == "free"

    def test_missing_customer_email_is_ignored(self, db_session, mock_redis, workspace):
        body = charge_body()
        body["data"]["customer"] = None
        result = make_engine().handle(parse_notification(body), db_session)
        assert result.outcome == Outcome.IGNORED
        db_session.refresh(workspace)
        assert workspace.plan == "free"

    @pytest.mark.parametrize("status", ["failed", "pending", "cancelled"])
    def test_unsuccessful_charge_is_ignored(self, db_session, mock_redis, workspace, status):
        body = charge_body()
        body["data"]["status"] = status
        result = make_engine().handle(parse_notification(body), db_session)

        assert result.outcome == Outcome.IGNORED
        db_session.refresh(workspace)
        assert workspace.plan == "free"
        assert db_session.query(Customer).count() == 0
        assert mock_redis.keys("lnking_sale_events:*") == []


@pytest.mark.critical
class TestSubscriptionEnded:
    """Test cancellation and disable notifications"""

    @pytest.mark.parametrize("event_name", ["subscription.cancelled", "subscription.disabled"])
    def test_subscription_end_downgrades_to_free(self, db_session, mock_redis, event_name):
        ws = Workspace(id="a2", name="Beta", slug="beta", flutterwave_subscription_id="flw_99")
        db_session.add(ws)
        db_session.commit()
        make_engine().handle(parse_notification(charge_body(tx_ref="lnking_u1_a2_business_monthly_x", flw_ref="flw_99")),
                             db_session)
        db_session.refresh(ws)
        assert ws.plan == "business"

        result = make_engine().handle(parse_notification({"event": event_name, "data": {"flw_ref": "flw_99"}}),
                                      db_session)

        assert result.outcome == Outcome.RESOLVED
        assert result.job is None
        db_session.refresh(ws)
        assert_plan(ws, "free")

    def test_cancellation_for_unknown_subscription_is_ignored(self, db_session, mock_redis, workspace):
        result = make_engine().handle(
            parse_notification({"event": "subscription.cancelled", "data": {"flw_ref": "flw_unknown"}}), db_session
        )
        assert result.outcome == Outcome.IGNORED

    def test_subscription_created_is_acknowledged_noop(self, db_session, mock_redis, workspace):
        event = parse_notification({"event": "subscription.created", "data": {"flw_ref": "flw_1"}})
        assert event.kind == EventKind.SUBSCRIPTION_CREATED
        assert make_engine().handle(event, db_session).outcome == Outcome.IGNORED

    def test_unknown_event_is_ignored(self, db_session, mock_redis, workspace):
        event = parse_notification({"event": "transfer.completed", "data": {}})
        assert event.kind == EventKind.UNKNOWN
        assert make_engine().handle(event, db_session).outcome == Outcome.IGNORED


@pytest.mark.high
class TestStoreFailures:
    """Test that store and lock failures surface as retryable errors"""

    def test_held_lock_raises_upstream_unavailable(self, db_session, mock_redis, workspace):
        mock_redis.set("entitlement_lock:a1", "someone-else", ex=30)

        with patch('lnking.services.reconciliation_service.settings') as mock_settings:
            mock_settings.ENTITLEMENT_LOCK_TIMEOUT = 30
            mock_settings.ENTITLEMENT_LOCK_WAIT = 0
            with pytest.raises(UpstreamUnavailable):
                make_engine().handle(parse_notification(charge_body()), db_session)

        db_session.refresh(workspace)
        assert workspace.plan == "free"
        assert mock_redis.get("entitlement_lock:a1") == "someone-else"

    def test_lock_is_released_after_commit(self, db_session, mock_redis, workspace):
        make_engine().handle(parse_notification(charge_body()), db_session)
        assert mock_redis.get("entitlement_lock:a1") is None

    @patch('lnking.services.reconciliation_service.claim_invoice')
    def test_redis_error_raises_upstream_unavailable(self, mock_claim, db_session, mock_redis, workspace):
        mock_claim.side_effect = redis.ConnectionError("connection refused")
        with pytest.raises(UpstreamUnavailable):
            make_engine().handle(parse_notification(charge_body()), db_session)
        assert mock_redis.get("entitlement_lock:a1") is None

    def test_retry_after_failed_claim_emits_lead(self, db_session, mock_redis, workspace):
        """A redelivery of the charge that created the customer still produces its lead"""
        event = parse_notification(charge_body(flw_ref="flw_retry"))

        with patch('lnking.services.reconciliation_service.claim_invoice',
                   side_effect=redis.ConnectionError("connection refused")):
            with pytest.raises(UpstreamUnavailable):
                make_engine().handle(event, db_session)

        customer = db_session.query(Customer).one()
        assert customer.first_invoice_id == "flw_retry"

        result = make_engine().handle(event, db_session)
        assert result.outcome == Outcome.RESOLVED
        assert result.job.lead is not None
        assert result.job.lead.customer_id == customer.id
        assert db_session.query(Customer).count() == 1

    def test_later_invoice_for_same_customer_has_no_lead(self, db_session, mock_redis, workspace):
        engine = make_engine()
        first = engine.handle(parse_notification(charge_body(flw_ref="flw_first")), db_session)
        second = engine.handle(parse_notification(charge_body(flw_ref="flw_second")), db_session)

        assert first.job.lead is not None
        assert second.outcome == Outcome.RESOLVED
        assert second.job.lead is None


@pytest.mark.high
class TestTransactionVerification:
    """Test the optional verify-transaction round trip before a plan is granted"""

    def make_client(self, status="successful", tx_ref="lnking_u1_a1_pro_monthly_abc123"):
        client = MagicMock()
        client.verify_transaction.return_value = {
            "status": "success",
            "message": "Transaction fetched successfully",
            "data": {"id": 4242, "tx_ref": tx_ref, "status": status}
        }
        return client

    def test_verified_charge_is_applied(self, db_session, mock_redis, workspace):
        client = self.make_client()
        result = make_engine(client=client, verify_transactions=True).handle(
            parse_notification(charge_body()), db_session
        )

        client.verify_transaction.assert_called_once_with(4242)
        assert result.outcome == Outcome.RESOLVED
        db_session.refresh(workspace)
        assert_plan(workspace, "pro")

    @pytest.mark.parametrize("status,tx_ref", [
        ("failed", "lnking_u1_a1_pro_monthly_abc123"),
        ("successful", "lnking_u1_a1_business_monthly_other"),
    ])
    def test_unconfirmed_charge_is_ignored(self, db_session, mock_redis, workspace, status, tx_ref):
        client = self.make_client(status=status, tx_ref=tx_ref)
        result = make_engine(client=client, verify_transactions=True).handle(
            parse_notification(charge_body()), db_session
        )

        assert result.outcome == Outcome.IGNORED
        db_session.refresh(workspace)
        assert workspace.plan == "free"
        assert mock_redis.keys("lnking_sale_events:*") == []

    def test_verification_outage_raises_upstream_unavailable(self, db_session, mock_redis, workspace):
        client = MagicMock()
        client.verify_transaction.side_effect = UpstreamUnavailable("Failed to verify transaction")
        with pytest.raises(UpstreamUnavailable):
            make_engine(client=client, verify_transactions=True).handle(
                parse_notification(charge_body()), db_session
            )
        db_session.refresh(workspace)
        assert workspace.plan == "free"

    def test_verification_is_off_by_default(self, db_session, mock_redis, workspace):
        client = MagicMock()
        result = make_engine(client=client).handle(parse_notification(charge_body()), db_session)
        assert result.outcome == Outcome.RESOLVED
        client.verify_transaction.assert_not_called()


@pytest.mark.critical
class TestProcessWebhook:
    """Test verification and parsing in front of the engine"""

    def test_bad_signature_raises_before_parsing(self, db_session, mock_redis, workspace):
        with pytest.raises(Unauthorized):
            process_webhook(b"not json at all", "wrong-hash", db_session)
        with pytest.raises(Unauthorized):
            process_webhook(json.dumps(charge_body()).encode(), None, db_session)

        db_session.refresh(workspace)
        assert workspace.plan == "free"

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'"charge.completed"'])
    def test_non_object_body_is_invalid(self, db_session, mock_redis, body):
        with pytest.raises(InvalidPayload):
            process_webhook(body, WEBHOOK_HASH, db_session)

    def test_valid_notification_is_reconciled(self, db_session, mock_redis, workspace):
        result = process_webhook(json.dumps(charge_body()).encode(), WEBHOOK_HASH, db_session,
                                 engine=make_engine())
        assert result.outcome == Outcome.RESOLVED
        db_session.refresh(workspace)
        assert workspace.plan == "pro"
