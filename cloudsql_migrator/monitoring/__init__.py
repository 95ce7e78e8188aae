"""
Monitoring and reporting for batch migrations.
"""

from .summary import build_summary, render_batch_summary

__all__ = [
    "build_summary",
    "render_batch_summary",
]
