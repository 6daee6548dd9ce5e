"""
Unit tests for subscription status normalization and plan limits.
"""

from datetime import datetime, timezone, timedelta
from types import SimpleNamespace

import pytest

from creditgate.entitlements.subscription_state import (
    CanonicalStatus,
    describe,
    grants_access,
    normalize_status,
    plan_limits,
)

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class TestNormalizeStatus:

    @pytest.mark.parametrize("raw,expected", [
        ("active", CanonicalStatus.ACTIVE),
        ("ACTIVE", CanonicalStatus.ACTIVE),
        ("trialing", CanonicalStatus.TRIAL),
        ("past_due", CanonicalStatus.PAST_DUE),
        ("unpaid", CanonicalStatus.PAST_DUE),
        ("canceled", CanonicalStatus.CANCELLED),
        ("cancelled", CanonicalStatus.CANCELLED),
        ("incomplete", CanonicalStatus.INACTIVE),
        ("incomplete_expired", CanonicalStatus.INACTIVE),
        ("", CanonicalStatus.INACTIVE),
        (None, CanonicalStatus.INACTIVE),
    ])
    def test_provider_status_mapping(self, raw, expected):
        assert normalize_status(raw, now=NOW) == expected

    def test_active_past_renewal_is_expired(self):
        renews_at = NOW - timedelta(days=1)
        assert normalize_status("active", renews_at, NOW) == CanonicalStatus.EXPIRED

    def test_active_future_renewal_stays_active(self):
        renews_at = NOW + timedelta(days=1)
        assert normalize_status("active", renews_at, NOW) == CanonicalStatus.ACTIVE

    def test_naive_renewal_treated_as_utc(self):
        renews_at = (NOW - timedelta(hours=1)).replace(tzinfo=None)
        assert normalize_status("active", renews_at, NOW) == CanonicalStatus.EXPIRED

    def test_trial_ignores_renewal_date(self):
        renews_at = NOW - timedelta(days=3)
        assert normalize_status("trialing", renews_at, NOW) == CanonicalStatus.TRIAL

    @pytest.mark.parametrize("status,granted", [
        (CanonicalStatus.ACTIVE, True),
        (CanonicalStatus.TRIAL, True),
        (CanonicalStatus.PAST_DUE, False),
        (CanonicalStatus.CANCELLED, False),
        (CanonicalStatus.INACTIVE, False),
        (CanonicalStatus.EXPIRED, False),
    ])
    def test_only_active_and_trial_grant(self, status, granted):
        assert grants_access(status) is granted


class TestPlanLimits:

    def test_pro_limit(self, catalog):
        limits = plan_limits("pro", "alttext-ai", catalog)
        assert limits.limit == 1000
        assert limits.unlimited is False

    def test_agency_is_unlimited(self, catalog):
        limits = plan_limits("agency", "alttext-ai", catalog)
        assert limits.unlimited is True
        assert limits.limit is None

    def test_unknown_plan_falls_back_to_free(self, catalog):
        limits = plan_limits("platinum", "seo-ai-meta", catalog)
        assert limits.plan == "platinum"
        assert limits.limit == 10
        assert limits.unlimited is False

    def test_plan_name_is_case_insensitive(self, catalog):
        assert plan_limits("PRO", "beepbeep-ai", catalog).limit == 2500


class TestDescribe:

    def test_missing_record_is_free_inactive(self, catalog):
        view = describe(None, product="alttext-ai", now=NOW, catalog=catalog)

        assert view.status == CanonicalStatus.INACTIVE
        assert view.plan == "free"
        assert view.limit == 50
        assert view.grants_access is False

    def test_record_view_serializes_dates(self, catalog):
        record = SimpleNamespace(
            product="alttext-ai",
            plan="pro",
            status="active",
            renews_at=datetime(2024, 7, 1),
            canceled_at=None,
            trial_ends_at=None,
        )

        view = describe(record, now=NOW, catalog=catalog)
        payload = view.to_dict()

        assert view.grants_access is True
        assert payload["status"] == "active"
        assert payload["limit"] == 1000
        assert payload["renewsAt"] == "2024-07-01T00:00:00+00:00"
        assert payload["canceledAt"] is None
