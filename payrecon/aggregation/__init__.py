"""
Aggregation: payment status for many orders at once.
"""

from payrecon.aggregation.multi_order import MultiOrderAggregator, StatusBatch

__all__ = ["MultiOrderAggregator", "StatusBatch"]
