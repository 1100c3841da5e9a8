"""Reorder service: reads out-of-order events, writes them back sorted.

Consumes JSON events from raw-events, runs each through the K-Slack engine,
and publishes every released batch to ordered-events.  The output topic has
a single partition so consumers see one global timestamp order.

Usage:
    python -m reorder.main
    python -m reorder.main --config reorder/conf/kslack.yml --timeout 2000
    python -m reorder.main --snapshot-path /var/lib/reorder/snapshot.json
"""

import argparse
import json
import signal
import sys
from pathlib import Path

from confluent_kafka import Consumer, Producer, KafkaError
from confluent_kafka.admin import AdminClient, NewTopic

from reorder.config import ConfigurationError, ExtractionError, load_config, parse_arguments
from reorder.engine import KSlackEngine
from reorder.state import Snapshot

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down reorder service...")
    running = False


signal.signal(signal.SIGINT, _shutdown)
signal.signal(signal.SIGTERM, _shutdown)


def _ensure_topic(bootstrap_servers, topic, num_partitions=1):
    """Create the output topic if it doesn't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    fs = admin.create_topics([
        NewTopic(topic, num_partitions=num_partitions, replication_factor=3)
    ])
    for t, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{t}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{t}' already exists")
            else:
                raise


def build_config(args):
    """Config file (if any) first, then command-line overrides."""
    overrides = {
        "timestamp": args.timestamp_field,
        "timeout": args.timeout,
        "max_k": args.max_k,
        "discard_late_arrival": args.discard_late_arrival,
    }
    if args.config:
        return load_config(args.config, **overrides)

    positional = [args.timestamp_field or "timestamp"]
    if args.timeout is not None or args.max_k is not None:
        positional.append(args.timeout if args.timeout is not None else -1)
    if args.max_k is not None:
        positional.append(args.max_k)
    if args.discard_late_arrival is not None:
        positional.append(args.discard_late_arrival)
    return parse_arguments(*positional)


def _load_snapshot(engine, path: Path):
    if not path.is_file():
        print(f"No snapshot at {path}, starting empty")
        return
    with open(path) as f:
        snapshot = Snapshot.from_dict(json.load(f))
    engine.apply(snapshot)
    print(f"Restored {snapshot.event_count} buffered events from {path}  "
          f"k={snapshot.state.k}")


def _save_snapshot(engine, path: Path):
    snapshot = engine.capture()
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w") as f:
        json.dump(snapshot.to_dict(), f)
    tmp.replace(path)
    print(f"Saved {snapshot.event_count} buffered events to {path}")


def main():
    parser = argparse.ArgumentParser(description="K-Slack reorder service")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--input-topic", default="raw-events")
    parser.add_argument("--output-topic", default="ordered-events")
    parser.add_argument("--group-id", default="reorder-kslack")
    parser.add_argument("--config", help="YAML file with kslack parameters")
    parser.add_argument("--timestamp-field", help="Event field holding the timestamp (ms)")
    parser.add_argument("--timeout", type=int, help="Timer flush timeout in ms, -1 disables")
    parser.add_argument("--max-k", type=int, help="Upper bound for the K-Slack window (ms)")
    parser.add_argument(
        "--discard-late-arrival", action=argparse.BooleanOptionalAction, default=None,
        help="Drop events older than the last released timestamp",
    )
    parser.add_argument("--snapshot-path", type=Path,
                        help="Restore from / save to this JSON snapshot")
    parser.add_argument("--drain-on-exit", action="store_true",
                        help="Release every buffered event on shutdown")
    args = parser.parse_args()

    if args.drain_on_exit and args.snapshot_path:
        parser.error("--drain-on-exit and --snapshot-path are mutually exclusive")

    try:
        config = build_config(args)
    except (ConfigurationError, FileNotFoundError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    _ensure_topic(args.bootstrap_servers, args.output_topic)

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.input_topic])

    producer = Producer({"bootstrap.servers": args.bootstrap_servers})

    emitted = 0

    def publish(batch):
        nonlocal emitted
        for event in batch:
            producer.produce(args.output_topic, value=json.dumps(event).encode("utf-8"))
        producer.poll(0)
        emitted += len(batch)

    engine = KSlackEngine(config, sink=publish)
    if args.snapshot_path:
        _load_snapshot(engine, args.snapshot_path)
    engine.start()

    consumed = 0
    rejected = 0

    print(f"Reorder service started  input={args.input_topic}  "
          f"output={args.output_topic}  timeout={config.timeout}  "
          f"max_k={config.max_k}  discard_late={config.discard_late_arrival}")

    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                print(f"Consumer error: {msg.error()}", file=sys.stderr)
                continue

            try:
                event = json.loads(msg.value().decode("utf-8"))
                engine.on_event(event)
            except (json.JSONDecodeError, UnicodeDecodeError, ExtractionError) as e:
                rejected += 1
                print(f"Rejected message at offset {msg.offset()}: {e}", file=sys.stderr)
                continue
            consumed += 1

            if consumed % 1000 == 0:
                producer.flush()

            if consumed % 500 == 0:
                s = engine.stats()
                print(f"  ... {consumed} consumed, {emitted} emitted  k={s['k']}  "
                      f"buffered={s['active_events'] + s['expired_events']}  "
                      f"late_dropped={s['dropped_late']}")
    finally:
        engine.stop()
        if args.drain_on_exit:
            drained = engine.drain()
            print(f"Drained {len(drained)} buffered events")
        elif args.snapshot_path:
            _save_snapshot(engine, args.snapshot_path)
        producer.flush()
        consumer.close()
        print(f"Done. {consumed} consumed, {emitted} emitted, {rejected} rejected.")


if __name__ == "__main__":
    main()
