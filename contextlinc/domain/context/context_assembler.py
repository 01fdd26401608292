from typing import Iterable, List, Optional, Sequence, Tuple
import asyncio
import time

import structlog

from contextlinc.domain.errors import BuilderDegradedError
from contextlinc.domain.models.context_state import (
    Attachment, ContextLayer, ContextWindow, LayerStatus, Session, utcnow
)
from contextlinc.infrastructure.observability.logging import context_logger, metrics
from .budget_compressor import BudgetCompressor
from .context_ranker import RelevanceScorer
from .layers import LayerBuilder, ordered_builders

logger = structlog.get_logger(__name__)


class ContextAssembler:
    """Builds the eleven-layer context window for one turn"""

    def __init__(
        self,
        builders: Sequence[LayerBuilder],
        scorer: RelevanceScorer,
        compressor: BudgetCompressor,
        default_budget: int = 8000,
        builder_timeout: float = 5.0
    ):
        self.builders = ordered_builders(builders)
        self.scorer = scorer
        self.compressor = compressor
        self.default_budget = default_budget
        self.builder_timeout = builder_timeout

    async def build_context_window(
        self,
        session: Session,
        query: str,
        attachments: Optional[List[Attachment]] = None,
        budget: Optional[int] = None
    ) -> ContextWindow:
        """Run every builder, score, and fit the result to the budget"""

        attachments = attachments or []
        budget = self.default_budget if budget is None else budget
        started = time.perf_counter()

        logger.info("Building context window", session_id=session.session_id, budget=budget)

        # gather keeps layer-id order whatever the completion order
        results = await asyncio.gather(*[
            self._run_builder(builder, session, query, attachments)
            for builder in self.builders
        ])
        layers = [layer for layer, _ in results]
        degraded = [int(layer.id) for layer, failed in results if failed]

        window = await self._finalize(layers, budget, preserve_ids=())
        window = window.model_copy(update={"degraded_layer_ids": degraded})

        metrics.record_latency("context.assembly", (time.perf_counter() - started) * 1000)
        metrics.set_gauge("context.total_tokens", window.total_tokens)
        logger.info(
            "Context window built",
            session_id=session.session_id,
            active_layers=window.active_layer_ids,
            total_tokens=window.total_tokens,
            relevance=round(window.relevance_score, 3),
            degraded=degraded
        )
        return window

    async def optimize(
        self,
        window: ContextWindow,
        target_tokens: int,
        preserve_layer_ids: Iterable[int] = ()
    ) -> ContextWindow:
        """Re-fit an existing window to a new token target"""

        optimized = await self._finalize(list(window.layers), target_tokens, preserve_ids=preserve_layer_ids)
        return optimized.model_copy(update={"degraded_layer_ids": list(window.degraded_layer_ids)})

    async def _finalize(
        self,
        layers: List[ContextLayer],
        budget: int,
        preserve_ids: Iterable[int]
    ) -> ContextWindow:
        layers = self.scorer.score_layers(layers)
        layers, report = await self.compressor.compress(layers, budget, preserve_ids)
        # Dropped layers are inactive now and score accordingly
        layers = self.scorer.score_layers(layers)

        return ContextWindow(
            layers=layers,
            total_tokens=sum(layer.token_count for layer in layers),
            relevance_score=self.scorer.aggregate(layers),
            built_at=utcnow(),
            budget=budget,
            compression=report
        )

    async def _run_builder(
        self,
        builder: LayerBuilder,
        session: Session,
        query: str,
        attachments: List[Attachment]
    ) -> Tuple[ContextLayer, bool]:
        try:
            try:
                if builder.external:
                    layer = await asyncio.wait_for(
                        builder.build(session, query, attachments),
                        timeout=self.builder_timeout
                    )
                else:
                    layer = await builder.build(session, query, attachments)
            except asyncio.TimeoutError as exc:
                raise BuilderDegradedError(builder.layer_id, f"timed out after {self.builder_timeout}s") from exc
            except BuilderDegradedError:
                raise
            except Exception as exc:
                raise BuilderDegradedError(builder.layer_id, f"{type(exc).__name__}: {exc}") from exc

            if layer.id != builder.layer_id or layer.status == LayerStatus.PROCESSING:
                raise BuilderDegradedError(builder.layer_id, "builder returned an unfinished layer")
        except BuilderDegradedError as exc:
            metrics.increment_counter("context.builder_degraded", tags={"layer_id": str(int(builder.layer_id))})
            context_logger.log_layer_event(
                layer_id=int(builder.layer_id),
                layer_name=builder.name,
                status=LayerStatus.INACTIVE.value,
                error=exc.reason
            )
            return builder.degraded(), True

        context_logger.log_layer_event(
            layer_id=int(layer.id),
            layer_name=layer.name,
            status=layer.status.value,
            token_count=layer.token_count
        )
        return layer, False
