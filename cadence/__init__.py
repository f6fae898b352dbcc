"""Cadence: a recurring-billing engine.

Subscriptions, plan swaps with proration, coupons and a periodic billing
run that folds due order items into per-owner orders.
"""
