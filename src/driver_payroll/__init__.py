"""Driver pay run engine: build, reconcile and post payable batches."""

__version__ = "1.0.0"
