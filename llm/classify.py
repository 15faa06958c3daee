"""
Remote transaction classification.
Wraps client calls into typed outcomes so callers never handle raw
exceptions from the network or from malformed answers.
"""
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from core.categories import is_valid_category, is_valid_pair
from core.exceptions import ClassificationServiceError, RemoteServiceError, ValidationError
from core.logger import setup_logger
from core.normalize import estimate_tokens
from core.schema import AnalysisChunk, SingleClassificationResponse, Transaction
from llm.client import LLMClient
from llm.prompts import (
    build_bulk_system_prompt,
    build_bulk_user_message,
    build_single_system_prompt,
    build_single_user_message,
)

logger = setup_logger(__name__)

SINGLE_MAX_COMPLETION_TOKENS = 300


@dataclass
class RemoteOutcome:
    """Result of one single-transaction remote call: either a result or an error."""
    result: Optional[SingleClassificationResponse] = None
    error: Optional[ClassificationServiceError] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


@dataclass
class ChunkOutcome:
    """Raw answer of one chunk call plus token accounting."""
    data: Optional[Dict[str, Any]] = None
    error: Optional[ClassificationServiceError] = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def ok(self) -> bool:
        return self.data is not None

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


def parse_single_response(data: Dict[str, Any]) -> SingleClassificationResponse:
    """
    Validate a single-transaction answer against the schema and taxonomy.

    A subcategory that does not belong to the category is dropped rather
    than rejected; an unknown category is rejected.

    Raises:
        ValidationError: If the answer does not match the expected shape
    """
    try:
        response = SingleClassificationResponse.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Remote answer failed schema validation: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False, include_context=False)},
        )

    if not is_valid_category(response.category):
        raise ValidationError(
            f"Remote answer used unknown category: {response.category}",
            details={"category": response.category},
        )

    if response.subcategory is not None and not is_valid_pair(response.category, response.subcategory):
        logger.debug(f"Dropping subcategory '{response.subcategory}' not in '{response.category}'")
        response.subcategory = None

    return response


def classify_transaction(client: LLMClient, transaction: Transaction) -> RemoteOutcome:
    """
    Classify one transaction with the remote classifier.

    Args:
        client: Remote classifier client
        transaction: Transaction to classify

    Returns:
        RemoteOutcome holding either the validated answer or the error
    """
    try:
        completion = client.complete_json(
            system_prompt=build_single_system_prompt(),
            user_message=build_single_user_message(transaction),
            max_completion_tokens=SINGLE_MAX_COMPLETION_TOKENS,
        )
        return RemoteOutcome(result=parse_single_response(completion.data))

    except (RemoteServiceError, ValidationError) as e:
        logger.warning(f"Remote classification failed for transaction {transaction.id}: {e.message}")
        return RemoteOutcome(error=e)


def classify_chunk(client: LLMClient, chunk: AnalysisChunk) -> ChunkOutcome:
    """
    Send one bulk chunk to the remote classifier.

    The answer is returned unvalidated; see llm.validation.

    Args:
        client: Remote classifier client
        chunk: Chunk with transactions and shared context

    Returns:
        ChunkOutcome with the raw JSON answer or the error, plus token usage
    """
    system_prompt = build_bulk_system_prompt()
    user_message = build_bulk_user_message(chunk.transactions, chunk.context)
    estimated_input = estimate_tokens(system_prompt) + estimate_tokens(user_message)

    try:
        completion = client.complete_json(system_prompt=system_prompt, user_message=user_message)
    except (RemoteServiceError, ValidationError) as e:
        logger.warning(
            f"Chunk {chunk.chunk_index + 1}/{chunk.total_chunks} remote call failed: {e.message}"
        )
        return ChunkOutcome(error=e, input_tokens=estimated_input)

    input_tokens = completion.input_tokens
    if not isinstance(input_tokens, int):
        input_tokens = estimated_input
    output_tokens = completion.output_tokens
    if not isinstance(output_tokens, int):
        output_tokens = estimate_tokens(json.dumps(completion.data))

    return ChunkOutcome(
        data=completion.data,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )
