"""
Settings package: configuration paths and the settings API.

This package provides:

- :mod:`CarCost.settings.lib` – Settings management, schema validation and application paths.
"""
