"""Processing-mode policies over a node's input items.

Modes:
- first: only item 0
- each: items one at a time, in order
- batch: chunks of batch_size; items within a chunk run concurrently,
  chunks run one after another
- all: the whole list handed over once
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from nodeflow.core.graph_schema import NodeDefinition

logger = logging.getLogger(__name__)

ProcessingMode = Literal["each", "batch", "first", "all"]


class ItemProcessingError(Exception):
    """Item processing stopped on the first failure (continue_on_error=False)."""

    def __init__(self, message: str, index: int, processed: int):
        super().__init__(message)
        self.index = index
        self.processed = processed


@dataclass
class ProcessingConfig:
    mode: ProcessingMode = "all"
    batch_size: int = 100
    continue_on_error: bool = True


@dataclass
class ItemError:
    index: int
    error: str


@dataclass
class ProcessingResult:
    success: bool
    results: list[Any] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)
    processed_count: int = 0
    failed_count: int = 0


async def _call(fn: Callable, *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def chunk(items: list[Any], size: int) -> list[list[Any]]:
    """Split items into consecutive chunks of at most size."""
    if size <= 0:
        raise ValueError("Chunk size must be greater than 0")
    return [items[i : i + size] for i in range(0, len(items), size)]


class ItemProcessor:
    """Apply a per-item function under a processing mode."""

    @classmethod
    async def process_items(
        cls,
        items: list[Any],
        fn: Callable[[Any, int, Any], Any],
        config: ProcessingConfig | None = None,
        context: Any = None,
    ) -> ProcessingResult:
        """
        Run fn(item, index, context) over items according to config.mode.

        Raises:
            ItemProcessingError: each/batch failure with continue_on_error=False
            Exception: first/all failure with continue_on_error=False
        """
        config = config or ProcessingConfig()
        if config.mode == "first":
            return await cls._process_first(items, fn, config, context)
        if config.mode == "each":
            return await cls._process_each(items, fn, config, context)
        if config.mode == "batch":
            return await cls._process_batch(items, fn, config, context)
        return await cls._process_all(items, fn, config, context)

    @staticmethod
    async def _process_first(items, fn, config, context) -> ProcessingResult:
        if not items:
            return ProcessingResult(success=True)
        try:
            result = await _call(fn, items[0], 0, context)
            return ProcessingResult(success=True, results=[result], processed_count=1)
        except Exception as e:
            if not config.continue_on_error:
                raise
            return ProcessingResult(
                success=False, errors=[ItemError(0, str(e))], failed_count=1
            )

    @staticmethod
    async def _process_each(items, fn, config, context) -> ProcessingResult:
        results: list[Any] = []
        errors: list[ItemError] = []
        for index, item in enumerate(items):
            try:
                results.append(await _call(fn, item, index, context))
            except Exception as e:
                if not config.continue_on_error:
                    raise ItemProcessingError(
                        f"Processing failed at item {index}: {e}\n"
                        f"Processed {len(results)} of {len(items)} items successfully.",
                        index=index,
                        processed=len(results),
                    ) from e
                logger.debug(f"Item {index} failed: {e}")
                errors.append(ItemError(index, str(e)))
        return ProcessingResult(
            success=not errors,
            results=results,
            errors=errors,
            processed_count=len(results),
            failed_count=len(errors),
        )

    @staticmethod
    async def _process_batch(items, fn, config, context) -> ProcessingResult:
        results: list[Any] = []
        errors: list[ItemError] = []
        for batch_number, batch in enumerate(chunk(items, config.batch_size)):
            offset = batch_number * config.batch_size
            outcomes = await asyncio.gather(
                *(_call(fn, item, offset + i, context) for i, item in enumerate(batch)),
                return_exceptions=True,
            )
            for i, outcome in enumerate(outcomes):
                index = offset + i
                if isinstance(outcome, Exception):
                    if not config.continue_on_error:
                        raise ItemProcessingError(
                            f"Processing failed at item {index}: {outcome}\n"
                            f"Processed {len(results)} of {len(items)} items successfully.",
                            index=index,
                            processed=len(results),
                        ) from outcome
                    errors.append(ItemError(index, str(outcome)))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results.append(outcome)
        return ProcessingResult(
            success=not errors,
            results=results,
            errors=errors,
            processed_count=len(results),
            failed_count=len(errors),
        )

    @staticmethod
    async def _process_all(items, fn, config, context) -> ProcessingResult:
        try:
            result = await _call(fn, items, 0, context)
        except Exception as e:
            if not config.continue_on_error:
                raise
            return ProcessingResult(
                success=False, errors=[ItemError(0, str(e))], failed_count=len(items)
            )
        results = result if isinstance(result, list) else [result]
        return ProcessingResult(success=True, results=results, processed_count=len(items))

    @staticmethod
    def get_input_data(items: list[Any], mode: ProcessingMode | None) -> Any:
        """Value a node receives as `data` under a processing mode."""
        if mode == "all":
            return items
        return items[0] if items else []

    @staticmethod
    def prepare_output_data(results: list[Any], mode: ProcessingMode | None) -> Any:
        if mode == "first":
            return results[0] if results else None
        return results

    @staticmethod
    def parse_processing_config(definition: NodeDefinition) -> ProcessingConfig:
        return ProcessingConfig(
            mode=definition.processing_mode or "all",
            batch_size=definition.batch_size,
            continue_on_error=definition.continue_on_error,
        )
