# =============================================================================
# madrasa_core/__init__.py
# Offline-first data layer for the madrasa management app
# =============================================================================

__version__ = "0.1.0"
