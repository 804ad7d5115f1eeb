"""BoostPay payment webhook service."""
