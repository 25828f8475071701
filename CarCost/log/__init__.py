"""
Logging subsystem.

Modules:

- :mod:`CarCost.log.log` – Root logger setup, the in-memory TankHandler and the Qt message bridge.
"""
