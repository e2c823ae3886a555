"""
BrinkByte Vision Billing Server

License, subscription and usage metering backend for camera edge devices.
Edge devices validate camera licenses, check feature entitlements, report
usage and send heartbeats; the dashboard reads license status and pricing.
"""

__version__ = "2.0.0"
