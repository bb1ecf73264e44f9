"""billgraph: communications-to-billable-events graph pipeline."""

__version__ = "0.1.0"
