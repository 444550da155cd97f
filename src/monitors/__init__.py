"""Stateful anomaly monitors that produce notifications."""

from src.monitors.performance import PerformanceMonitor
from src.monitors.security import SecurityMonitor
from src.monitors.transactions import TransactionMonitor

__all__ = ["PerformanceMonitor", "SecurityMonitor", "TransactionMonitor"]
