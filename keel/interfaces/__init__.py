"""External interfaces for the Keel runtime.

Key Components:
    - api: FastAPI server streaming agent events over SSE
    - cli: Click command-line interface
"""

__all__ = []
