"""Simple consumer for checking the order of the reorder service output.

Prints every event from the ordered topic and flags any timestamp that goes
backwards relative to the previous one.

Usage:
    python consumer.py
    python consumer.py --bootstrap-servers kafka-1:29092 --topic ordered-events
"""

import argparse
import json
import signal

from confluent_kafka import Consumer

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down consumer...")
    running = False


signal.signal(signal.SIGINT, _shutdown)
signal.signal(signal.SIGTERM, _shutdown)


def main():
    parser = argparse.ArgumentParser(description="Ordered event consumer")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="ordered-events")
    parser.add_argument("--group-id", default="order-verifier")
    args = parser.parse_args()

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.topic])

    count = 0
    regressions = 0
    last_ts = None
    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                print(f"Consumer error: {msg.error()}")
                continue

            event = json.loads(msg.value().decode("utf-8"))
            ts = event["timestamp"]
            count += 1

            flag = ""
            if last_ts is not None and ts < last_ts:
                regressions += 1
                flag = f"  OUT OF ORDER (-{last_ts - ts}ms)"
            last_ts = ts if last_ts is None else max(last_ts, ts)

            print(f"[offset={msg.offset()}] ts={ts}  sensor={event.get('sensor_id')}{flag}")

            if count % 500 == 0:
                print(f"  ... {count} events consumed, {regressions} out of order")
    finally:
        consumer.close()
        print(f"Done. {count} events consumed, {regressions} out of order.")


if __name__ == "__main__":
    main()
