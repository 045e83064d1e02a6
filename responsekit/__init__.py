"""
ResponseKit - reliable request orchestration for LLM response APIs.

This package sends prompts to a remote response API, deduplicates concurrent
deliveries of the same request, resolves multi-step tool calls, and keeps
remote vector indexes in sync with local document manifests.
"""

__version__ = "0.1.0"
