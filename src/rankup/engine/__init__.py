"""Rank-up pipeline: verification, progression, publication and orchestration."""
