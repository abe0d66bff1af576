"""
CrlfTool - Fix or validate line endings in a directory tree.

This module provides functionality to:
- Convert line endings to CRLF (Windows) or LF (Unix)
- Report files whose line endings do not match the target convention
- Skip files already known to conform, using a result index between runs
"""

__version__ = "1.0.0"
