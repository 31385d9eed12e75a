"""Shared building blocks: configuration, session, crypto adapter, updaters."""
