"""Agents that talk to the generation service: outline, writer, judge, ledger, voice editor."""
