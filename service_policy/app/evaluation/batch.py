"""
Concurrent evaluation of independent policy requests.
"""

import asyncio
from typing import Awaitable, Callable, List, Sequence

from shared.errors import ValidationError
from shared.logging import get_logger
from ..rules.models import Decision, EvaluationRequest


class BatchEvaluator:
    """Fans a list of requests through the single-request path.

    Results come back in input order. A failure in one item becomes that
    item's decision and does not affect the others.
    """

    def __init__(self, evaluate: Callable[[EvaluationRequest], Awaitable[Decision]],
                 on_error: Callable[[EvaluationRequest, BaseException], Decision],
                 max_size: int = 50):
        self._evaluate = evaluate
        self._on_error = on_error
        self.max_size = max_size
        self.logger = get_logger("policy.batch")

    async def evaluate(self, requests: Sequence[EvaluationRequest]) -> List[Decision]:
        if len(requests) > self.max_size:
            raise ValidationError(
                f"Batch size cannot exceed {self.max_size} requests",
                details={"max_size": self.max_size, "received": len(requests)}
            )
        if not requests:
            return []

        results = await asyncio.gather(
            *(self._evaluate(request) for request in requests),
            return_exceptions=True
        )

        decisions: List[Decision] = []
        for index, (request, result) in enumerate(zip(requests, results)):
            if isinstance(result, BaseException):
                self.logger.error(
                    "Batch item evaluation failed",
                    index=index,
                    resource=request.resource,
                    action=request.action,
                    error=str(result)
                )
                decisions.append(self._on_error(request, result))
            else:
                decisions.append(result)

        self.logger.info(
            "Batch evaluated",
            size=len(requests),
            permitted=sum(1 for d in decisions if d.permitted)
        )
        return decisions
