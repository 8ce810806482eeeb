"""Scope-to-session bookkeeping and the engine's own session index."""
