"""oddly-brilliant: bounty challenges, proportional payouts and governance audits."""

__version__ = "0.1.0"
