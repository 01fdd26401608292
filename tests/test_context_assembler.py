"""Tests for assembling the eleven-layer context window.

Tests cover:
- Greeting and attachment scenarios
- Builder failures and timeouts degrade a single layer
- Idempotent assembly for unchanged state
- Budget fitting and optimization of an existing window
"""

from __future__ import annotations

import asyncio

import pytest

from contextlinc.domain.context.context_assembler import ContextAssembler
from contextlinc.domain.context.layers import LayerBuilder
from contextlinc.domain.errors import BudgetInfeasibleError
from contextlinc.domain.models.context_state import Attachment, LayerId, LayerStatus


class FailingLayer(LayerBuilder):
    layer_id = LayerId.KNOWLEDGE
    external = True

    async def build(self, session, query, attachments):
        raise RuntimeError("index offline")


class SlowLayer(LayerBuilder):
    layer_id = LayerId.MEMORY
    external = True

    async def build(self, session, query, attachments):
        await asyncio.sleep(5)
        return self.finish({"late": True}, active=True)


class UnfinishedLayer(LayerBuilder):
    layer_id = LayerId.TOOLS

    async def build(self, session, query, attachments):
        return self.finish({}, active=False).model_copy(update={"status": LayerStatus.PROCESSING})


def assembler_with(engine, *replacements, builder_timeout=5.0):
    builders = {builder.layer_id: builder for builder in engine.assembler.builders}
    for builder in replacements:
        builders[builder.layer_id] = builder
    return ContextAssembler(
        list(builders.values()),
        engine.scorer,
        engine.assembler.compressor,
        builder_timeout=builder_timeout
    )


def stable_view(window):
    """Layer payloads without the per-call query timestamp"""
    view = []
    for layer in window.layers:
        dumped = layer.model_dump()
        dumped["data"].pop("timestamp", None)
        view.append(dumped)
    return view


class TestScenarios:
    """Representative turns."""

    async def test_greeting(self, engine, session):
        window = await engine.assembler.build_context_window(session, "hi")

        assert len(window.layers) == 11
        assert window.active_layer_ids == [1, 2, 5, 9, 10, 11]
        assert window.get_layer(LayerId.KNOWLEDGE).status == LayerStatus.INACTIVE
        assert window.get_layer(LayerId.USER_QUERY).data["complexity"] == "simple"
        assert window.relevance_score == pytest.approx(4.69 / 11, abs=1e-6)
        assert window.total_tokens == sum(layer.token_count for layer in window.layers)
        assert window.compression is None
        assert window.degraded_layer_ids == []

    async def test_summarize_attachment(self, engine, session):
        attachment = Attachment(
            id="doc-1",
            filename="report.txt",
            extracted_content="Quarterly revenue grew twelve percent on strong subscription renewals."
        )
        window = await engine.assembler.build_context_window(session, "summarize this", [attachment])

        knowledge = window.get_layer(LayerId.KNOWLEDGE)
        assert knowledge.is_active
        assert knowledge.relevance_score == 0.9
        assert knowledge.data["file_context"][0]["filename"] == "report.txt"
        assert window.get_layer(LayerId.EXAMPLES).is_active

    async def test_builders_are_read_only(self, engine, session):
        await engine.assembler.build_context_window(session, "hi")
        assert session.turn_count == 0
        assert engine.memory.status("user-1", "session-1")["total"] == 0


class TestDegradation:
    """A failing builder never sinks the window."""

    async def test_failing_builder(self, engine, session):
        assembler = assembler_with(engine, FailingLayer())
        window = await assembler.build_context_window(session, "hi")

        assert len(window.layers) == 11
        knowledge = window.get_layer(LayerId.KNOWLEDGE)
        assert knowledge.status == LayerStatus.INACTIVE
        assert knowledge.data == {}
        assert window.degraded_layer_ids == [LayerId.KNOWLEDGE]

    async def test_timed_out_builder(self, engine, session):
        assembler = assembler_with(engine, SlowLayer(), builder_timeout=0.05)
        window = await assembler.build_context_window(session, "hi")

        memory = window.get_layer(LayerId.MEMORY)
        assert memory.status == LayerStatus.INACTIVE
        assert memory.token_count == 0
        assert window.degraded_layer_ids == [LayerId.MEMORY]

    async def test_unfinished_layer_is_degraded(self, engine, session):
        assembler = assembler_with(engine, UnfinishedLayer())
        window = await assembler.build_context_window(session, "hi")
        assert window.degraded_layer_ids == [LayerId.TOOLS]

    async def test_several_failures(self, engine, session):
        assembler = assembler_with(engine, FailingLayer(), SlowLayer(), builder_timeout=0.05)
        window = await assembler.build_context_window(session, "hi")

        assert window.degraded_layer_ids == [LayerId.KNOWLEDGE, LayerId.MEMORY]
        assert window.get_layer(LayerId.INSTRUCTIONS).is_active


class TestIdempotence:
    """Same state and query give the same window."""

    async def test_repeat_assembly(self, engine, session):
        first = await engine.assembler.build_context_window(session, "explain context layers")
        second = await engine.assembler.build_context_window(session, "explain context layers")

        assert stable_view(first) == stable_view(second)
        assert first.total_tokens == second.total_tokens
        assert first.relevance_score == second.relevance_score


class TestBudget:
    """Budget fitting through the assembler."""

    async def test_small_budget(self, engine, session):
        window = await engine.assembler.build_context_window(session, "hi", budget=50)

        assert window.total_tokens <= 50
        assert window.budget == 50
        assert window.compression is not None
        for layer_id in (LayerId.INSTRUCTIONS, LayerId.CONSTRAINTS, LayerId.USER_QUERY):
            layer = window.get_layer(layer_id)
            assert layer.is_active
            assert layer.data
        assert window.active_layer_ids == [1, 9, 11]

    async def test_infeasible_budget(self, engine, session):
        with pytest.raises(BudgetInfeasibleError):
            await engine.assembler.build_context_window(session, "hi", budget=10)

    async def test_zero_budget_is_not_replaced_by_default(self, engine, session):
        with pytest.raises(BudgetInfeasibleError) as exc_info:
            await engine.assembler.build_context_window(session, "hi", budget=0)
        assert exc_info.value.budget == 0

    async def test_optimize_preserves_requested_layers(self, engine, session):
        window = await engine.assembler.build_context_window(session, "hi")
        optimized = await engine.assembler.optimize(window, 60, preserve_layer_ids=[LayerId.USER_INFO])

        assert optimized.total_tokens <= 60
        assert optimized.get_layer(LayerId.USER_INFO).is_active
        assert optimized.compression.preserved_layer_ids == [LayerId.USER_INFO]
        # The source window is left as it was
        assert window.compression is None
