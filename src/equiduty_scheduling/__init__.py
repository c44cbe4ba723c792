"""EquiDuty scheduling core: facility availability resolution and turn-based routine selection."""

__version__ = "0.1.0"
