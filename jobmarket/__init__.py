"""Mechanic job marketplace: job lifecycle, bidding and change-order escrow."""
