"""
Monitoring: Prometheus metrics and health endpoint.
"""

from lpbot.monitoring.metrics import BotMetrics, HealthChecker, start_metrics_server

__all__ = ["BotMetrics", "HealthChecker", "start_metrics_server"]
