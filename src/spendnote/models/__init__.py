"""Pydantic models for claim links, the prover boundary and the HTTP API."""
