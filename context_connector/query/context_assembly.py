"""
Context assembly under a token budget.

Greedy, order-preserving packing of ranked candidates. Token cost is a fixed
character ratio; exact tokenization is not attempted.
"""

from typing import List

from context_connector.query.models import Candidate, ContextBundle, ContextItem
from context_connector.shared.observability import get_logger
from context_connector.shared.observability.metrics import context_bundle_tokens

logger = get_logger(__name__)

TOKENS_PER_CHAR = 0.25


class ContextAssembler:
    def __init__(self, tokens_per_char: float = TOKENS_PER_CHAR):
        if tokens_per_char <= 0:
            raise ValueError("tokens_per_char must be positive")
        self.tokens_per_char = tokens_per_char

    def estimate_tokens(self, text: str) -> int:
        return int(len(text or "") * self.tokens_per_char)

    def assemble(
        self, ranked: List[Candidate], original_query: str, token_budget: int
    ) -> ContextBundle:
        """
        Pack ``ranked`` into a bundle in rank order.

        Packing stops at the first item that would exceed ``token_budget``;
        later, smaller items are not considered. The bundle is therefore
        always a prefix of ``ranked``.
        """
        bundle = ContextBundle(query=original_query, context_window=token_budget)

        for candidate in ranked:
            tokens = self.estimate_tokens(candidate.content)
            if bundle.total_tokens + tokens > token_budget:
                logger.debug(
                    "Context budget reached",
                    packed=len(bundle.items),
                    remaining=len(ranked) - len(bundle.items),
                    total_tokens=bundle.total_tokens,
                    next_tokens=tokens,
                    budget=token_budget,
                )
                break

            bundle.items.append(
                ContextItem(
                    id=candidate.id,
                    title=candidate.title,
                    content=candidate.content,
                    path=candidate.path,
                    content_type=candidate.content_type,
                    relevance_score=candidate.final_score or 0.0,
                    tokens=tokens,
                )
            )
            bundle.total_tokens += tokens

        context_bundle_tokens.observe(bundle.total_tokens)
        return bundle
