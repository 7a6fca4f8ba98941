"""BugScope: bug-report driven code retrieval and multi-stage LLM analysis."""

__version__ = "0.3.0"
