"""score - multi-movement agent orchestration.

A piece is an ordered set of movements. Each movement invokes a persona
through a provider, is routed by its rules, and the engine advances until
the piece completes or aborts.
"""

__version__ = "0.4.0"
