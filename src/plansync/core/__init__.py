"""Async call helpers shared by sync passes."""

from .async_utils import CallLimiter

__all__ = ["CallLimiter"]
