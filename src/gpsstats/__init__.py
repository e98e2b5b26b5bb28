"""gpsstats: publish gpsd satellite-fix quality changes to an MQTT broker."""

__version__ = "0.6.0"
