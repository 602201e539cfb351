"""Tests for AnomalyNotificationHook and the anomaly scorers.

Covers:
- Post-append dispatch onto the worker pool
- Annotations written for flagged batches, none for clean ones
- Scorer, annotation store and emitter failures never reach the writer
- HTTP scorer request/response handling
"""

import threading
from unittest.mock import MagicMock

import pytest
import requests

from agritrace.traceability_ledger.anomaly_hook import (
    AnomalyNotificationHook,
    FunctionAnomalyScorer,
    HttpAnomalyScorer,
    NullAnomalyScorer,
    build_scorer,
)
from agritrace.traceability_ledger.config import TraceabilityLedgerConfig
from agritrace.traceability_ledger.models import AnomalyVerdict


def flag_everything(vti_id):
    return {"isAnomaly": True, "reason": f"irregular history for {vti_id}"}


@pytest.fixture
def make_hook(ledger, annotation_store, config, provenance):
    hooks = []

    def _make(scorer, **kwargs):
        hook = AnomalyNotificationHook(
            ledger,
            scorer=scorer,
            annotation_store=annotation_store,
            config=kwargs.pop("config", config),
            provenance=provenance,
        )
        hook.attach()
        hooks.append(hook)
        return hook

    yield _make
    for hook in hooks:
        hook.shutdown()


@pytest.fixture
def batch(registry):
    return registry.create("farm_batch", metadata={"farmFieldId": "plot-7"})


def transported(ledger, vti):
    return ledger.append({
        "event_type": "TRANSPORTED",
        "actor_ref": "transporter-1",
        "identifier_ref": vti,
    })


# ==============================================================================
# Dispatch
# ==============================================================================

class TestDispatch:
    """Which appends trigger a check, and when."""

    def test_flagged_event_annotated(self, ledger, make_hook, batch, provenance):
        hook = make_hook(FunctionAnomalyScorer(flag_everything))

        event = transported(ledger, batch)
        assert hook.flush(timeout=5)

        annotations = hook.get_annotations([event.event_id])[event.event_id]
        assert len(annotations) == 1
        assert annotations[0].identifier_id == batch
        assert annotations[0].reason == f"irregular history for {batch}"
        assert hook.annotation_count == 1
        assert provenance.get_chain(annotations[0].annotation_id)[0].action == (
            "annotate"
        )

    def test_clean_event_not_annotated(self, ledger, make_hook, batch):
        hook = make_hook(NullAnomalyScorer())

        transported(ledger, batch)
        assert hook.flush(timeout=5)

        assert hook.annotation_count == 0

    def test_pre_harvest_events_skipped(self, ledger, make_hook):
        scorer = MagicMock(return_value={"isAnomaly": True})
        hook = make_hook(FunctionAnomalyScorer(scorer))

        ledger.append({
            "event_type": "PLANTED",
            "actor_ref": "farmer-1",
            "field_plot_ref": "plot-7",
        })
        assert hook.flush(timeout=5)

        scorer.assert_not_called()

    def test_append_returns_before_scoring(self, ledger, make_hook, batch):
        """A stalled scorer delays the flag, not the write."""
        release = threading.Event()

        def slow_scorer(vti_id):
            release.wait(timeout=5)
            return {"isAnomaly": True, "reason": "late"}

        hook = make_hook(FunctionAnomalyScorer(slow_scorer))

        event = transported(ledger, batch)
        assert ledger.get_event(event.event_id).event_id == event.event_id
        assert hook.annotation_count == 0
        assert hook.pending_count == 1

        release.set()
        assert hook.flush(timeout=5)
        assert hook.annotation_count == 1

    def test_disabled_hook(self, ledger, make_hook, batch):
        scorer = MagicMock(return_value={"isAnomaly": True})
        hook = make_hook(
            FunctionAnomalyScorer(scorer),
            config=TraceabilityLedgerConfig(anomaly_hook_enabled=False),
        )

        transported(ledger, batch)
        assert hook.flush(timeout=5)
        scorer.assert_not_called()

    def test_detach_and_shutdown(self, ledger, make_hook, batch):
        hook = make_hook(NullAnomalyScorer())
        assert ledger.subscriber_count == 1

        hook.shutdown()
        assert ledger.subscriber_count == 0
        transported(ledger, batch)
        assert hook.pending_count == 0


# ==============================================================================
# Failures
# ==============================================================================

class TestDownstreamFailures:
    """Downstream failures are logged and swallowed."""

    def test_scorer_failure(self, ledger, make_hook, batch, caplog):
        def broken(vti_id):
            raise requests.ConnectionError("scorer unreachable")

        hook = make_hook(FunctionAnomalyScorer(broken))

        event = transported(ledger, batch)
        assert hook.flush(timeout=5)

        assert ledger.get_event(event.event_id).event_id == event.event_id
        assert hook.annotation_count == 0
        assert "AT_LEDGER_DOWNSTREAM_FAILURE_ERROR" in caplog.text

    def test_malformed_verdict(self, ledger, make_hook, batch):
        hook = make_hook(FunctionAnomalyScorer(lambda vti: {"isAnomaly": "maybe"}))

        transported(ledger, batch)
        assert hook.flush(timeout=5)
        assert hook.annotation_count == 0

    def test_annotation_store_failure(self, ledger, batch, config):
        store = MagicMock()
        store.append.side_effect = RuntimeError("annotation store down")
        hook = AnomalyNotificationHook(
            ledger,
            scorer=FunctionAnomalyScorer(flag_everything),
            annotation_store=store,
            config=config,
        )

        event = transported(ledger, batch)
        assert hook.check_event(event) is None
        hook.shutdown()

    def test_emitter_called_and_isolated(self, ledger, make_hook, batch):
        received = []

        def broken_emitter(annotation, event):
            raise RuntimeError("notification service down")

        hook = make_hook(FunctionAnomalyScorer(flag_everything))
        hook.add_emitter(broken_emitter)
        hook.add_emitter(lambda annotation, event: received.append(
            (annotation.event_id, event.event_id),
        ))

        event = transported(ledger, batch)
        assert hook.flush(timeout=5)

        assert received == [(event.event_id, event.event_id)]
        assert hook.annotation_count == 1


# ==============================================================================
# Scorers
# ==============================================================================

class TestScorers:
    """Scorer implementations and selection."""

    def test_http_scorer_posts_vti(self):
        response = MagicMock()
        response.json.return_value = {"isAnomaly": True, "reason": "too fast"}
        session = MagicMock()
        session.post.return_value = response

        scorer = HttpAnomalyScorer(
            "https://scoring.example.org/check", timeout=3.0, session=session,
        )
        verdict = scorer.score("vti-1")

        session.post.assert_called_once_with(
            "https://scoring.example.org/check",
            json={"vtiId": "vti-1"},
            timeout=3.0,
        )
        response.raise_for_status.assert_called_once()
        assert verdict == AnomalyVerdict(is_anomaly=True, reason="too fast")

    def test_http_scorer_http_error(self):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("503")
        session = MagicMock()
        session.post.return_value = response

        with pytest.raises(requests.HTTPError):
            HttpAnomalyScorer("https://x", session=session).score("vti-1")

    def test_http_scorer_requires_url(self):
        with pytest.raises(ValueError):
            HttpAnomalyScorer("")

    def test_verdict_reason_optional(self):
        verdict = FunctionAnomalyScorer(lambda vti: {"isAnomaly": False}).score("v")
        assert verdict.is_anomaly is False
        assert verdict.reason is None

    def test_build_scorer(self):
        assert isinstance(build_scorer(TraceabilityLedgerConfig()), NullAnomalyScorer)

        scorer = build_scorer(TraceabilityLedgerConfig(
            anomaly_scorer_url="https://scoring.example.org/check",
            anomaly_scorer_timeout_seconds=4.0,
        ))
        assert isinstance(scorer, HttpAnomalyScorer)
        assert scorer.timeout == 4.0
        scorer.close()
