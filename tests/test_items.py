"""Tests for processing-mode item handling."""

import asyncio

import pytest

from nodeflow.core.graph_schema import NodeDefinition
from nodeflow.core.items import (
    ItemProcessingError,
    ItemProcessor,
    ProcessingConfig,
    chunk,
)


def double(item, index, context):
    return item * 2


class TestChunk:
    """Tests for chunk()."""

    def test_even_and_remainder(self):
        """Test chunking with a short final chunk."""
        assert chunk([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    def test_invalid_size(self):
        """Test that a non-positive size raises."""
        with pytest.raises(ValueError, match="greater than 0"):
            chunk([1], 0)


class TestProcessingModes:
    """Tests for each processing mode."""

    @pytest.mark.asyncio
    async def test_first_mode(self):
        """Test that first mode only processes item 0."""
        result = await ItemProcessor.process_items([1, 2, 3], double, ProcessingConfig(mode="first"))

        assert result.results == [2]
        assert result.processed_count == 1

    @pytest.mark.asyncio
    async def test_first_mode_empty(self):
        """Test first mode with no items."""
        result = await ItemProcessor.process_items([], double, ProcessingConfig(mode="first"))

        assert result.success
        assert result.results == []

    @pytest.mark.asyncio
    async def test_each_mode_in_order(self):
        """Test that each mode calls fn per item with its index."""
        seen = []

        async def record(item, index, context):
            seen.append((index, item, context))
            return item

        result = await ItemProcessor.process_items(
            ["a", "b"], record, ProcessingConfig(mode="each"), context="ctx"
        )

        assert seen == [(0, "a", "ctx"), (1, "b", "ctx")]
        assert result.results == ["a", "b"]

    @pytest.mark.asyncio
    async def test_each_mode_collects_errors(self):
        """Test that failures are collected when continue_on_error is set."""

        def maybe_fail(item, index, context):
            if item == 2:
                raise ValueError("two")
            return item

        result = await ItemProcessor.process_items([1, 2, 3], maybe_fail, ProcessingConfig(mode="each"))

        assert not result.success
        assert result.results == [1, 3]
        assert result.failed_count == 1
        assert result.errors[0].index == 1
        assert result.errors[0].error == "two"

    @pytest.mark.asyncio
    async def test_each_mode_stops_on_error(self):
        """Test that continue_on_error=False raises with the failing index."""

        def maybe_fail(item, index, context):
            if item == 2:
                raise ValueError("two")
            return item

        config = ProcessingConfig(mode="each", continue_on_error=False)
        with pytest.raises(ItemProcessingError) as exc_info:
            await ItemProcessor.process_items([1, 2, 3], maybe_fail, config)

        assert exc_info.value.index == 1
        assert exc_info.value.processed == 1
        assert "Processed 1 of 3 items successfully." in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_batch_mode_runs_chunks_sequentially(self):
        """Test that items within a batch overlap but batches do not."""
        events = []

        async def work(item, index, context):
            events.append(("start", item))
            await asyncio.sleep(0)
            events.append(("end", item))
            return item

        result = await ItemProcessor.process_items(
            [1, 2, 3, 4], work, ProcessingConfig(mode="batch", batch_size=2)
        )

        assert result.results == [1, 2, 3, 4]
        assert events[:2] == [("start", 1), ("start", 2)]
        assert events.index(("end", 2)) < events.index(("start", 3))

    @pytest.mark.asyncio
    async def test_batch_rounds_follow_batch_size(self):
        """Test that 10 items with batch_size=3 run as rounds of 3, 3, 3 and 1."""
        events = []
        active = 0
        peak = 0

        async def work(item, index, context):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            events.append("start")
            await asyncio.sleep(0)
            events.append("end")
            active -= 1
            return index

        result = await ItemProcessor.process_items(
            list(range(10)), work, ProcessingConfig(mode="batch", batch_size=3)
        )

        rounds = []
        for previous, event in zip([None, *events], events):
            if event == "start":
                if previous != "start":
                    rounds.append(0)
                rounds[-1] += 1
        assert rounds == [3, 3, 3, 1]
        assert peak == 3
        assert result.results == list(range(10))

    @pytest.mark.asyncio
    async def test_batch_mode_error_index(self):
        """Test that batch errors report the absolute item index."""

        def fail_on_three(item, index, context):
            if item == 3:
                raise RuntimeError("bad")
            return item

        result = await ItemProcessor.process_items(
            [1, 2, 3, 4], fail_on_three, ProcessingConfig(mode="batch", batch_size=2)
        )

        assert result.errors[0].index == 2
        assert result.results == [1, 2, 4]

    @pytest.mark.asyncio
    async def test_all_mode_passes_list(self):
        """Test that all mode calls fn once with the whole list."""
        result = await ItemProcessor.process_items(
            [1, 2, 3], lambda items, index, context: sum(items), ProcessingConfig(mode="all")
        )

        assert result.results == [6]
        assert result.processed_count == 3

    @pytest.mark.asyncio
    async def test_all_mode_failure(self):
        """Test that an all-mode failure counts every item as failed."""

        def fail(items, index, context):
            raise ValueError("whole batch")

        result = await ItemProcessor.process_items([1, 2], fail, ProcessingConfig(mode="all"))

        assert not result.success
        assert result.failed_count == 2


class TestProcessingHelpers:
    """Tests for data selection and config parsing."""

    def test_get_input_data(self):
        """Test the data value per mode."""
        assert ItemProcessor.get_input_data([1, 2], "all") == [1, 2]
        assert ItemProcessor.get_input_data([1, 2], "each") == 1
        assert ItemProcessor.get_input_data([], "first") == []

    def test_prepare_output_data(self):
        """Test that first mode unwraps its single result."""
        assert ItemProcessor.prepare_output_data([5], "first") == 5
        assert ItemProcessor.prepare_output_data([], "first") is None
        assert ItemProcessor.prepare_output_data([1, 2], "each") == [1, 2]

    def test_parse_processing_config(self):
        """Test reading the processing fields from a definition."""
        definition = NodeDefinition(
            id="x", name="X", processingMode="batch", batchSize=10, continueOnError=False
        )
        config = ItemProcessor.parse_processing_config(definition)

        assert config.mode == "batch"
        assert config.batch_size == 10
        assert config.continue_on_error is False

    def test_default_mode_is_all(self):
        """Test that definitions without a mode process all items at once."""
        config = ItemProcessor.parse_processing_config(NodeDefinition(id="x", name="X"))
        assert config.mode == "all"
