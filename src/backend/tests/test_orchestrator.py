"""Tests for the writer/reviewer round loop."""
import json

import pytest

from fakes import (
    FakeModelClient,
    make_config,
    response,
    reviewer_json,
    round_responses,
    writer_json,
)
from loopforge.agent.errors import (
    ResponseMalformedError,
    TransportError,
    TransportRateLimitedError,
)
from loopforge.agent.orchestrator import IterationOrchestrator
from loopforge.agent.prompts import (
    NO_PRIOR_FEEDBACK,
    REVIEWER_SCHEMA,
    REVIEWER_SYSTEM,
    WRITER_SCHEMA,
    WRITER_SYSTEM,
)
from loopforge.models.schemas import ContentPart, Role, StopReason, TokenUsage
from loopforge.services.token_accountant import TokenAccountant


def _orchestrator(client, **kwargs):
    accountant = TokenAccountant()
    return IterationOrchestrator(client, accountant, **kwargs), accountant


class TestAutomaticRounds:
    @pytest.mark.asyncio
    async def test_pauses_when_target_met_after_minimum(self):
        client = FakeModelClient([
            *round_responses(1, [85, 70], selected=0),
            *round_responses(2, [90, 60], selected=0),
        ])
        orchestrator, accountant = _orchestrator(client)
        history = []

        outcome = await orchestrator.run_rounds(make_config(), history, start_id=1, count=5)

        assert outcome.stop_reason == StopReason.CONVERGED
        assert [r.id for r in history] == [1, 2]
        assert outcome.records == history
        assert history[-1].selected_score == 90
        assert len(client.calls) == 4
        assert accountant.totals().input_tokens == 400
        assert accountant.totals().output_tokens == 200

    @pytest.mark.asyncio
    async def test_pauses_when_maximum_used_up(self):
        client = FakeModelClient([
            item for i in range(1, 6) for item in round_responses(i, [60, 50])
        ])
        orchestrator, _ = _orchestrator(client)
        history = []

        outcome = await orchestrator.run_rounds(make_config(), history, start_id=1, count=5)

        assert outcome.stop_reason == StopReason.EXHAUSTED
        assert len(history) == 5
        assert history[-1].selected_score == 60

    @pytest.mark.asyncio
    async def test_selected_score_drives_convergence_not_best_score(self):
        # Draft 1 scores 95 but the reviewer picked draft 0 at 50
        client = FakeModelClient([
            *round_responses(1, [50, 95], selected=0),
            *round_responses(2, [50, 95], selected=0),
            *round_responses(3, [85, 20], selected=0),
        ])
        orchestrator, _ = _orchestrator(client)
        history = []

        outcome = await orchestrator.run_rounds(make_config(), history, start_id=1, count=5)

        assert outcome.stop_reason == StopReason.CONVERGED
        assert len(history) == 3

    @pytest.mark.asyncio
    async def test_out_of_range_selection_fails_the_round(self):
        bad_review = reviewer_json([70, 60], selected=5)
        client = FakeModelClient([response(writer_json(1)), response(bad_review)])
        orchestrator, _ = _orchestrator(client)
        history = []

        with pytest.raises(ResponseMalformedError) as exc_info:
            await orchestrator.run_rounds(make_config(), history, start_id=1, count=5)

        assert exc_info.value.role == Role.REVIEWER
        assert exc_info.value.round_id == 1
        assert exc_info.value.raw_text == bad_review
        assert history == []

    @pytest.mark.asyncio
    async def test_writer_draft_count_mismatch_fails_before_review(self):
        client = FakeModelClient([response(writer_json(1, draft_count=1))])
        orchestrator, accountant = _orchestrator(client)

        with pytest.raises(ResponseMalformedError) as exc_info:
            await orchestrator.run_rounds(make_config(draft_count=2), [], start_id=1, count=5)

        assert exc_info.value.role == Role.WRITER
        assert "2" in str(exc_info.value)
        assert len(client.calls) == 1
        # The call itself still cost tokens
        assert accountant.call_count == 1


class TestInstructions:
    @pytest.mark.asyncio
    async def test_first_round_uses_brief_only(self):
        client = FakeModelClient(round_responses(1, [90, 10]))
        orchestrator, _ = _orchestrator(client)
        config = make_config(min_iterations=1, max_iterations=1)

        await orchestrator.run_rounds(config, [], start_id=1, count=1)

        writer = client.instruction(0)
        assert config.writer_brief in writer
        assert "Please produce 2 independent drafts" in writer
        assert "Excerpt" not in writer

    @pytest.mark.asyncio
    async def test_next_round_carries_selected_excerpt_and_feedback(self):
        long_writer = writer_json(1, draft_count=2, content_size=400)
        selected_content = json.loads(long_writer)["drafts"][1]["content"]
        client = FakeModelClient([
            response(long_writer),
            response(reviewer_json([40, 70], selected=1, feedback="Shorten paragraph two.")),
            *round_responses(2, [90, 80]),
        ])
        orchestrator, _ = _orchestrator(client)

        await orchestrator.run_rounds(make_config(), [], start_id=1, count=5)

        writer = client.instruction(2)
        assert selected_content[:300] + "..." in writer
        assert selected_content not in writer
        assert "Shorten paragraph two." in writer
        assert make_config().writer_brief in writer

    @pytest.mark.asyncio
    async def test_excerpt_length_is_configurable(self):
        long_writer = writer_json(1, draft_count=2, content_size=400)
        selected_content = json.loads(long_writer)["drafts"][0]["content"]
        client = FakeModelClient([
            response(long_writer),
            response(reviewer_json([40, 30])),
            *round_responses(2, [90, 80]),
        ])
        orchestrator, _ = _orchestrator(client, excerpt_chars=20)

        await orchestrator.run_rounds(make_config(), [], start_id=1, count=5)

        assert selected_content[:20] + "..." in client.instruction(2)

    @pytest.mark.asyncio
    async def test_reviewer_sees_criteria_and_delimited_drafts(self):
        client = FakeModelClient(round_responses(1, [90, 10]))
        orchestrator, _ = _orchestrator(client)
        config = make_config(min_iterations=1)

        await orchestrator.run_rounds(config, [], start_id=1, count=1)

        reviewer = client.instruction(1)
        assert reviewer.startswith("Review criteria:\n" + config.reviewer_criteria)
        assert "--- Draft 1 ---\nRound 1 draft 0 content.\n--- End of Draft 1 ---" in reviewer
        assert "--- Draft 2 ---\nRound 1 draft 1 content.\n--- End of Draft 2 ---" in reviewer

    @pytest.mark.asyncio
    async def test_system_instructions_schemas_and_model(self):
        client = FakeModelClient(round_responses(1, [90, 10]))
        orchestrator, _ = _orchestrator(client)

        await orchestrator.run_rounds(make_config(min_iterations=1), [], start_id=1, count=1)

        writer_call, reviewer_call = client.calls
        assert writer_call["system_instruction"] == WRITER_SYSTEM
        assert writer_call["response_schema"] == WRITER_SCHEMA
        assert reviewer_call["system_instruction"] == REVIEWER_SYSTEM
        assert reviewer_call["response_schema"] == REVIEWER_SCHEMA
        assert writer_call["model_name"] == reviewer_call["model_name"] == "test-model"

    @pytest.mark.asyncio
    async def test_background_parts_precede_every_instruction(self):
        background = [
            ContentPart(name="notes.txt", text="River facts"),
            ContentPart(name="Pasted text", text="Audience: children"),
        ]
        client = FakeModelClient([*round_responses(1, [50, 40]), *round_responses(2, [90, 40])])
        orchestrator, _ = _orchestrator(client)

        await orchestrator.run_rounds(
            make_config(background_material=background), [], start_id=1, count=5
        )

        assert len(client.calls) == 4
        for call in client.calls:
            parts = call["content_parts"]
            assert parts[:2] == background
            assert len(parts) == 3
            assert parts[2].text is not None


class TestManualBatch:
    @pytest.mark.asyncio
    async def test_runs_every_requested_round_and_applies_override_once(self):
        client = FakeModelClient([
            *round_responses(1, [50, 40]),
            *round_responses(2, [85, 40]),
            *round_responses(3, [95, 90]),
            *round_responses(4, [99, 90]),
        ])
        orchestrator, _ = _orchestrator(client)
        config = make_config()
        history = []
        await orchestrator.run_rounds(config, history, start_id=1, count=5)
        assert len(history) == 2

        outcome = await orchestrator.run_rounds(
            config, history, start_id=3, count=2,
            is_manual_batch=True, feedback_override="Edited: add a conclusion.",
        )

        assert outcome.stop_reason == StopReason.BATCH_COMPLETE
        assert [r.id for r in outcome.records] == [3, 4]
        assert [r.id for r in history] == [1, 2, 3, 4]
        round3 = client.instruction(4)
        round4 = client.instruction(6)
        assert "Edited: add a conclusion." in round3
        assert "Feedback after round 2" not in round3
        assert "Feedback after round 3" in round4
        assert "Edited: add a conclusion." not in round4

    @pytest.mark.asyncio
    async def test_missing_feedback_uses_fallback_text(self):
        client = FakeModelClient([
            response(writer_json(1)),
            response(reviewer_json([50, 40], feedback="")),
            *round_responses(2, [50, 40]),
        ])
        orchestrator, _ = _orchestrator(client)
        config = make_config()
        history = []
        await orchestrator.run_rounds(config, history, start_id=1, count=1, is_manual_batch=True)

        await orchestrator.run_rounds(config, history, start_id=2, count=1, is_manual_batch=True)

        assert NO_PRIOR_FEEDBACK in client.instruction(2)


class TestTokens:
    @pytest.mark.asyncio
    async def test_usage_is_resolved_and_recorded_per_call(self):
        client = FakeModelClient([
            response(writer_json(1), input_tokens=120, total_tokens=300),
            response(reviewer_json([90, 10]), input_tokens=200, total_tokens=150),
        ])
        orchestrator, accountant = _orchestrator(client)
        history = []

        await orchestrator.run_rounds(make_config(min_iterations=1), history, start_id=1, count=1)

        assert history[0].writer_tokens == TokenUsage(input=120, output=180)
        assert history[0].reviewer_tokens == TokenUsage(input=200, output=0)
        assert accountant.input_tokens == 320
        assert accountant.output_tokens == 180

    @pytest.mark.asyncio
    async def test_missing_usage_counts_as_zero(self):
        client = FakeModelClient([
            response(writer_json(1), input_tokens=None, total_tokens=None),
            response(reviewer_json([90, 10]), input_tokens=None, total_tokens=None),
        ])
        orchestrator, accountant = _orchestrator(client)

        await orchestrator.run_rounds(make_config(min_iterations=1), [], start_id=1, count=1)

        assert accountant.total_tokens == 0
        assert accountant.call_count == 2


class TestTransportFailures:
    @pytest.mark.asyncio
    async def test_transport_error_gets_role_and_round(self):
        client = FakeModelClient([
            *round_responses(1, [50, 40]),
            response(writer_json(2)),
            TransportRateLimitedError("Model API quota exceeded or rate limit hit."),
        ])
        orchestrator, _ = _orchestrator(client)
        history = []

        with pytest.raises(TransportRateLimitedError) as exc_info:
            await orchestrator.run_rounds(make_config(), history, start_id=1, count=5)

        assert exc_info.value.role == Role.REVIEWER
        assert exc_info.value.round_id == 2
        assert exc_info.value.kind == "transport_rate_limited"
        assert [r.id for r in history] == [1]

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_transport_error(self):
        client = FakeModelClient([RuntimeError("socket closed")])
        orchestrator, accountant = _orchestrator(client)

        with pytest.raises(TransportError) as exc_info:
            await orchestrator.run_rounds(make_config(), [], start_id=1, count=5)

        assert "socket closed" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.role == Role.WRITER
        assert accountant.call_count == 0


@pytest.mark.asyncio
async def test_progress_messages_are_reported():
    messages = []
    client = FakeModelClient(round_responses(1, [90, 10]))
    orchestrator, _ = _orchestrator(client, on_progress=messages.append)

    await orchestrator.run_rounds(make_config(min_iterations=1, max_iterations=1), [], start_id=1, count=1)

    assert messages[0] == "Round 1 (target: 1 rounds) - writer generating 2 draft(s)..."
    assert messages[1].startswith("Round 1 - writer produced 2 draft(s)")


class TestCarryForwardEdges:
    @pytest.mark.asyncio
    async def test_zero_excerpt_length_is_respected(self):
        long_writer = writer_json(1, draft_count=2, content_size=400)
        client = FakeModelClient([
            response(long_writer),
            response(reviewer_json([40, 30])),
            *round_responses(2, [90, 80]),
        ])
        orchestrator, _ = _orchestrator(client, excerpt_chars=0)

        await orchestrator.run_rounds(make_config(), [], start_id=1, count=5)

        assert "Round 1 draft 0 content." not in client.instruction(2)

    @pytest.mark.asyncio
    async def test_empty_override_replaces_feedback_verbatim(self):
        client = FakeModelClient([
            *round_responses(1, [50, 40], feedback="Reviewer says expand."),
            *round_responses(2, [50, 40]),
        ])
        orchestrator, _ = _orchestrator(client)
        config = make_config()
        history = []
        await orchestrator.run_rounds(config, history, start_id=1, count=1, is_manual_batch=True)

        await orchestrator.run_rounds(
            config, history, start_id=2, count=1, is_manual_batch=True, feedback_override=""
        )

        assert "Reviewer says expand." not in client.instruction(2)
        assert NO_PRIOR_FEEDBACK in client.instruction(2)
