# sessionledger/__init__.py
"""
Sessionledger: tamper-evident, optionally signed ledgers for AI-assisted coding sessions.
Hash-chained session records hosted by a singleton local daemon that many editor/CLI tools share.

Flight data recorder for your pair-programming sessions, one chain per session.
"""

__version__ = "0.1.0"
