"""
Collector daemon package for the wallbox session tracker.

Polls one or more charging stations over the local network, turns the noisy
plug-state stream into discrete charging sessions and writes every completed
session to the shared SQLite store read by the server package.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""
