"""Loop Forge: iterative writer/reviewer refinement over a generative text model."""

__version__ = "0.1.0"
