"""
Unit tests for logging helpers.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

import pytest

from blindtrade.utils.logger import NO_NEGOTIATION, NegotiationContextFilter, negotiation_context


def make_record():
    return logging.LogRecord("blindtrade.test", logging.INFO, __file__, 1, "message", None, None)


@pytest.mark.unit
class TestNegotiationContext:
    """Test stamping log records with the negotiation id."""

    def test_outside_any_negotiation(self):
        record = make_record()

        assert NegotiationContextFilter().filter(record)
        assert record.negotiation_id == NO_NEGOTIATION

    def test_inside_and_after_block(self):
        context_filter = NegotiationContextFilter()

        with negotiation_context("NEG-1A2B3C4D"):
            inside = make_record()
            context_filter.filter(inside)
        after = make_record()
        context_filter.filter(after)

        assert inside.negotiation_id == "NEG-1A2B3C4D"
        assert after.negotiation_id == NO_NEGOTIATION

    def test_threads_do_not_share_the_id(self):
        context_filter = NegotiationContextFilter()

        def stamp(negotiation_id):
            with negotiation_context(negotiation_id):
                record = make_record()
                context_filter.filter(record)
                return record.negotiation_id

        with ThreadPoolExecutor(max_workers=4) as pool:
            stamped = list(pool.map(stamp, [f"NEG-{n}" for n in range(8)]))

        assert stamped == [f"NEG-{n}" for n in range(8)]
