"""Runtime layer: engine, providers, sessions and task scheduling."""
