"""Locker controller gateway: heartbeats, RFID access decisions and lock commands over MQTT."""

__version__ = "0.1.0"
