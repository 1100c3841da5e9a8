"""Prometheus metrics exporter: watches disorder before and after reordering.

Subscribes to both raw-events and ordered-events, updating Prometheus
counters, histograms, and gauges in real-time: how shuffled the input is,
how long the reorder service holds events, and whether anything leaves it
out of order.

Usage:
    python -m exporter.main
    python -m exporter.main --bootstrap-servers kafka-1:29092 --port 9090
"""

import argparse
import json
import signal
import sys
import time

from confluent_kafka import Consumer, KafkaError
from prometheus_client import Counter, Histogram, Gauge, start_http_server

# ---------------------------------------------------------------------------
# Input metrics
# ---------------------------------------------------------------------------
raw_events_total = Counter(
    "reorder_raw_events_total",
    "Events seen on the raw input topic",
    ["sensor_id"],
)
out_of_order_arrivals_total = Counter(
    "reorder_out_of_order_arrivals_total",
    "Raw events older than the greatest timestamp seen before them",
)
arrival_disorder = Histogram(
    "reorder_arrival_disorder_milliseconds",
    "How far behind the running maximum a late raw event arrived",
    buckets=[10, 50, 100, 250, 500, 1000, 2000, 5000, 15000, 60000],
)

# ---------------------------------------------------------------------------
# Output metrics
# ---------------------------------------------------------------------------
ordered_events_total = Counter(
    "reorder_ordered_events_total",
    "Events seen on the ordered output topic",
)
order_regressions_total = Counter(
    "reorder_order_regressions_total",
    "Ordered-topic events whose timestamp went backwards",
)
reorder_delay = Histogram(
    "reorder_end_to_end_delay_milliseconds",
    "Wall clock at output minus event timestamp",
    buckets=[50, 100, 250, 500, 1000, 2000, 5000, 10000, 30000, 60000],
)

# ---------------------------------------------------------------------------
# Throughput gauges (updated every second)
# ---------------------------------------------------------------------------
events_per_second = Gauge(
    "reorder_events_per_second",
    "Current message rate per topic",
    ["topic"],
)
export_errors_total = Counter(
    "reorder_export_errors_total",
    "JSON parse or Kafka consumer errors in the exporter",
)

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down exporter...")
    running = False


signal.signal(signal.SIGINT, _shutdown)
signal.signal(signal.SIGTERM, _shutdown)


# ---------------------------------------------------------------------------
# Metric updaters
# ---------------------------------------------------------------------------

class TopicWatermark:
    """Greatest timestamp seen so far on one topic."""

    __slots__ = ("greatest",)

    def __init__(self):
        self.greatest = None

    def lag(self, ts: int) -> int:
        """Milliseconds *ts* trails the greatest timestamp (0 if it advances it)."""
        if self.greatest is None or ts >= self.greatest:
            self.greatest = ts
            return 0
        return self.greatest - ts


def _process_raw_event(event: dict, watermark: TopicWatermark):
    raw_events_total.labels(sensor_id=event.get("sensor_id", "unknown")).inc()
    lag = watermark.lag(event["timestamp"])
    if lag > 0:
        out_of_order_arrivals_total.inc()
        arrival_disorder.observe(lag)


def _process_ordered_event(event: dict, watermark: TopicWatermark, now_ms: int):
    ordered_events_total.inc()
    if watermark.lag(event["timestamp"]) > 0:
        order_regressions_total.inc()
    reorder_delay.observe(max(0, now_ms - event["timestamp"]))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Prometheus metrics exporter")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--raw-topic", default="raw-events")
    parser.add_argument("--ordered-topic", default="ordered-events")
    parser.add_argument(
        "--port", type=int, default=9090, help="Prometheus metrics HTTP port",
    )
    args = parser.parse_args()

    start_http_server(args.port)
    print(f"Prometheus metrics server started on :{args.port}")

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": "reorder-metrics-exporter",
        "auto.offset.reset": "latest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.raw_topic, args.ordered_topic])

    watermarks = {args.raw_topic: TopicWatermark(), args.ordered_topic: TopicWatermark()}
    count = 0
    window_start = time.time()
    window_counts = {args.raw_topic: 0, args.ordered_topic: 0}

    print(f"Exporter consuming from {args.raw_topic} + {args.ordered_topic} ...")

    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                export_errors_total.inc()
                print(f"Consumer error: {msg.error()}", file=sys.stderr)
                continue

            try:
                data = json.loads(msg.value().decode("utf-8"))
                topic = msg.topic()
                if topic == args.raw_topic:
                    _process_raw_event(data, watermarks[topic])
                elif topic == args.ordered_topic:
                    _process_ordered_event(data, watermarks[topic], int(time.time() * 1000))
            except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError):
                export_errors_total.inc()
                continue

            count += 1
            window_counts[topic] += 1

            now = time.time()
            elapsed = now - window_start
            if elapsed >= 1.0:
                for name, n in window_counts.items():
                    events_per_second.labels(topic=name).set(n / elapsed)
                    window_counts[name] = 0
                window_start = now

            if count % 5000 == 0:
                print(f"  ... {count} messages exported to metrics")
    finally:
        consumer.close()
        print(f"Exporter done. {count} messages processed.")


if __name__ == "__main__":
    main()
