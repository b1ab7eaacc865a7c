"""The daily tally pass."""

from tentmap.tally.job import TallyJob, format_summary

__all__ = ["TallyJob", "format_summary"]
