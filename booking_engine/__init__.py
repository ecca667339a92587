"""Booking request lifecycle and availability engine."""

from booking_engine.engine import BookingEngine
from booking_engine.errors import BookingEngineError, ErrorCode

__all__ = ["BookingEngine", "BookingEngineError", "ErrorCode"]
