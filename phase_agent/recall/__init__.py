"""Recursive context recall over prior-session history.

Import from the submodules (``phase_agent.recall.service`` and friends);
``phase_agent`` re-exports the public names.
"""
