"""homecore - Kontext, Lernen, Energie-Mining und abgesicherte Aktionen fuer Home Assistant."""

__version__ = "0.1.0"
