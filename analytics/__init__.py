"""Analytics sink: optional Snowflake (and future backends) for incident event analytics."""

from analytics.snowflake_sink import SnowflakeAlertSink, sink_alert_event

__all__ = ["SnowflakeAlertSink", "sink_alert_event"]
