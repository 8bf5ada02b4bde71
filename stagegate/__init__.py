"""StageGate - Progressive deployment with health-gated promotion and opt-in rollback."""

__version__ = "1.0.0"
