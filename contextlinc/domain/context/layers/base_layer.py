from abc import ABC, abstractmethod
from typing import Dict, Any, List

from contextlinc.domain.context.tokens import estimate_tokens
from contextlinc.domain.models.context_state import (
    Attachment, ContextLayer, LayerId, LayerStatus, LAYER_NAMES, Session
)


class LayerBuilder(ABC):
    """Base class for the builders of the eleven context layers.

    Builders are read-only: they look at the session, the query and the
    attachments, and at whatever stores they were given, but never write.
    Missing optional data yields an inactive layer rather than an error.
    """

    layer_id: LayerId
    # Builders that call out to external services run under a timeout
    external: bool = False

    @property
    def name(self) -> str:
        return LAYER_NAMES[self.layer_id]

    @abstractmethod
    async def build(self, session: Session, query: str, attachments: List[Attachment]) -> ContextLayer:
        """Build the layer for this turn"""
        pass

    def finish(self, data: Dict[str, Any], active: bool) -> ContextLayer:
        """Terminal layer with its token count filled in"""

        return ContextLayer(
            id=self.layer_id,
            name=self.name,
            status=LayerStatus.ACTIVE if active else LayerStatus.INACTIVE,
            data=data,
            token_count=estimate_tokens(data)
        )

    def degraded(self) -> ContextLayer:
        """Fallback used when the build failed or timed out"""

        return ContextLayer(
            id=self.layer_id,
            name=self.name,
            status=LayerStatus.INACTIVE,
            data={},
            token_count=0
        )
