"""Keel - conversational agent runtime with a context budget engine.

A runtime for tool-using agents with:
- Token estimation for text, content blocks and tool schemas
- Window management with sliding-window and priority retention
- Rule-based and summarizer-assisted compression
- Keyword retrieval over stored conversation history
- Strategy orchestration under a hard token ceiling
- Per-conversation and per-user monthly budgets
- A shared response cache
- A streaming agent turn loop with tool dispatch
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
