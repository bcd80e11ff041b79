"""Exam relay API: generation, grading and result collection for mediation practice."""

__version__ = "0.1.0"
