"""
Shared fixtures: transaction factory, fake remote clients and a cascade
that never touches the network.
"""
import datetime as dt
from typing import Any, Dict, List, Optional

import pytest

from core.exceptions import RemoteServiceError
from core.schema import Transaction
from llm.client import CompletionResult
from services.cascade import ClassificationCascade


def make_transaction(
    txn_id: str = "t1",
    description: str = "CHECKCARD 0412 SOME STORE",
    amount: Optional[float] = -25.0,
    date: Optional[dt.date] = dt.date(2024, 4, 12),
    **extra,
) -> Transaction:
    """Build a transaction whose type agrees with the amount sign."""
    if "type" not in extra:
        extra["type"] = "credit" if amount is not None and amount > 0 else "debit"
    return Transaction(id=txn_id, description=description, amount=amount, date=date, **extra)


class FakeClient:
    """
    Stand-in for LLMClient.

    Returns the queued answers in order (the last one repeats); an
    Exception instance in the queue is raised instead.
    """

    def __init__(self, answers: List[Any], input_tokens: int = 100, output_tokens: int = 50):
        self.answers = list(answers)
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: List[Dict[str, Any]] = []

    def complete_json(self, system_prompt: str, user_message: str, max_completion_tokens=None):
        self.calls.append({"system_prompt": system_prompt, "user_message": user_message})
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        if callable(answer):
            answer = answer(user_message)
        return CompletionResult(data=answer, input_tokens=self.input_tokens, output_tokens=self.output_tokens)


@pytest.fixture
def transaction_factory():
    return make_transaction


@pytest.fixture
def fake_client():
    """Factory for FakeClient instances."""
    return FakeClient


@pytest.fixture
def local_cascade():
    """Cascade without a remote tier."""
    return ClassificationCascade(client=None, pattern_confidence_floor=0.6)


@pytest.fixture
def failing_client():
    return FakeClient([RemoteServiceError("HTTP 503", details={"status_code": 503, "retryable": True})])
