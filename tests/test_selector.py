from __future__ import annotations

import asyncio
from typing import List
from urllib.parse import parse_qs, urlparse

from rmvwatch.models import StrategyName
from rmvwatch.selector import CAPTCHA_ERROR_KIND, DirectLinkStrategy, LocationSelector, default_strategies

from conftest import HAVERHILL, ScriptedStrategy, make_session


def _select(selector: LocationSelector):
    return asyncio.run(selector.select(make_session(), HAVERHILL, object()))  # type: ignore[arg-type]


def test_first_success_stops_the_chain() -> None:
    calls: List[StrategyName] = []
    selector = LocationSelector(
        [
            ScriptedStrategy(StrategyName.UI_A, "fail", calls=calls),
            ScriptedStrategy(StrategyName.UI_B, "ok", calls=calls),
            ScriptedStrategy(StrategyName.UI_C, "ok", calls=calls),
        ]
    )
    outcome = _select(selector)

    assert outcome.success
    assert outcome.strategy_used is StrategyName.UI_B
    assert outcome.handle is not None and outcome.handle.location == HAVERHILL
    assert calls == [StrategyName.UI_A, StrategyName.UI_B]
    assert [a.strategy for a in outcome.attempts] == [StrategyName.UI_A]


def test_all_strategies_failing_lists_every_attempt() -> None:
    calls: List[StrategyName] = []
    selector = LocationSelector(
        [
            ScriptedStrategy(StrategyName.UI_A, "fail", calls=calls),
            ScriptedStrategy(StrategyName.UI_B, "hang", timeout=0.05, calls=calls),
            ScriptedStrategy(StrategyName.UI_C, "boom", calls=calls),
        ]
    )
    outcome = _select(selector)

    assert not outcome.success
    assert outcome.handle is None
    assert outcome.strategy_used is StrategyName.UI_C
    # каждая стратегия вызвана ровно один раз, без повторов
    assert calls == [StrategyName.UI_A, StrategyName.UI_B, StrategyName.UI_C]
    assert outcome.error is not None
    details = outcome.error.details
    assert len(details) == 3
    assert details[0].startswith("ui_a:") and "location selection" in details[0]
    assert details[1].startswith("ui_b:") and "timed out" in details[1]
    assert details[2].startswith("ui_c:") and "RuntimeError" in details[2]


def test_default_order_is_direct_link_then_click_then_continue() -> None:
    names = [s.name for s in default_strategies(5.0)]
    assert names == [StrategyName.UI_A, StrategyName.UI_B, StrategyName.UI_C]
    assert all(s.timeout == 5.0 for s in default_strategies(5.0))


def test_direct_link_candidates_carry_token_and_location() -> None:
    urls = DirectLinkStrategy.candidate_urls(make_session(), HAVERHILL)
    assert len(urls) == 3
    for url in urls:
        query = parse_qs(urlparse(url).query)
        assert query["AccessToken"] == ["tok-123"]
        assert "27" in (query.get("locationId", []) + query.get("StepControls_0__Model_Value", []))


def test_explicit_empty_strategy_list_is_kept() -> None:
    selector = LocationSelector([])
    assert selector.strategies == []

    outcome = _select(selector)
    assert not outcome.success
    assert outcome.attempts == []


def test_captcha_marks_the_failure_as_blocked() -> None:
    selector = LocationSelector(
        [
            ScriptedStrategy(StrategyName.UI_A, "fail"),
            ScriptedStrategy(StrategyName.UI_B, "captcha"),
        ]
    )
    outcome = _select(selector)

    assert not outcome.success
    assert outcome.error is not None and outcome.error.kind == CAPTCHA_ERROR_KIND
    assert [a.captcha for a in outcome.attempts] == [False, True]


def test_plain_failures_stay_strategy_errors() -> None:
    outcome = _select(LocationSelector([ScriptedStrategy(StrategyName.UI_A, "fail")]))
    assert outcome.error is not None and outcome.error.kind == "StrategyError"
