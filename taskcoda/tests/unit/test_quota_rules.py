from __future__ import annotations

import math

from taskcoda.domain.models import Organization
from taskcoda.services.quota import (
    PLAN_QUOTAS,
    build_status,
    crossed_threshold,
    get_quota_for_plan,
    quota_headers,
    resolve_limit,
)


def test_status_below_limit_allows() -> None:
    status = build_status(99, 100)
    assert status.has_quota is True
    assert status.remaining == 1
    assert status.percentage == 99.0


def test_status_at_limit_denies() -> None:
    status = build_status(100, 100)
    assert status.has_quota is False
    assert status.remaining == 0
    assert status.percentage == 100.0


def test_status_clamps_overshoot() -> None:
    status = build_status(150, 100)
    assert status.has_quota is False
    assert status.remaining == 0
    assert status.percentage == 100.0


def test_unlimited_status_and_headers() -> None:
    status = build_status(5000, math.inf)
    assert status.has_quota is True
    assert status.percentage == 0
    assert quota_headers(status) == {
        "X-Quota-Used": "5000",
        "X-Quota-Limit": "unlimited",
        "X-Quota-Remaining": "unlimited",
    }
    assert status.as_dict()["limit"] == "unlimited"


def test_unknown_plan_falls_back_to_free() -> None:
    assert get_quota_for_plan(None) == PLAN_QUOTAS["free"]
    assert get_quota_for_plan("platinum") == PLAN_QUOTAS["free"]


def test_overrides_take_precedence_over_plan() -> None:
    org = Organization(plan="free", settings={"quotas": {"ai_messages": 500, "api_calls": None}})
    assert resolve_limit(org, "ai_messages") == 500
    assert math.isinf(resolve_limit(org, "api_calls"))
    assert resolve_limit(org, "storage_mb") == PLAN_QUOTAS["free"]["storage_mb"]


def test_threshold_fires_once_on_crossing() -> None:
    assert crossed_threshold(79, build_status(80, 100), 0.8) is True
    assert crossed_threshold(80, build_status(81, 100), 0.8) is False
    assert crossed_threshold(10, build_status(11, math.inf), 0.8) is False


def test_plan_table_is_ordered_for_every_metric() -> None:
    metrics = set(PLAN_QUOTAS["free"]) | set(PLAN_QUOTAS["pro"]) | set(PLAN_QUOTAS["enterprise"])
    assert metrics == {"ai_messages", "api_calls", "storage_mb", "team_members"}
    for metric in metrics:
        assert math.isinf(PLAN_QUOTAS["enterprise"][metric])
        assert PLAN_QUOTAS["free"][metric] < PLAN_QUOTAS["pro"][metric]
