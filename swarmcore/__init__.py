"""swarmcore: supervised orchestration of terminal coding agents."""

__version__ = "0.1.0"
