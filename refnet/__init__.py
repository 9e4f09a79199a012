"""refnet — on-chain referral network aggregator."""

__version__ = "0.1.0"
