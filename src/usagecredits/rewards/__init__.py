"""Milestone rewards: eligibility tracking, weighted prize draw, exactly-once grant."""
