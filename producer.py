"""Out-of-order event generator.

Simulates sensors whose readings reach Kafka after a random network delay,
so event timestamps arrive shuffled.  Each sensor profile controls how much
disorder it introduces; a small fraction of readings are stragglers that
show up far behind the rest.

Usage:
    python producer.py
    python producer.py --steady 10 --jittery 3 --stragglers 1
    python producer.py --eps 100 --topic raw-events
"""

import argparse
import heapq
import json
import random
import signal
import time
import uuid
from dataclasses import dataclass

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down generator...")
    running = False


signal.signal(signal.SIGINT, _shutdown)   # Ctrl+C (local dev)
signal.signal(signal.SIGTERM, _shutdown)  # docker stop / k8s pod termination


# ---------------------------------------------------------------------------
# Sensor profiles
# ---------------------------------------------------------------------------

@dataclass
class Sensor:
    sensor_id: str
    role: str  # steady | jittery | straggler
    events_per_min: float
    delay_ms_lo: int
    delay_ms_hi: int
    straggler_rate: float     # fraction of readings delayed by straggler_delay_ms
    straggler_delay_ms: int


def _create_sensors(n_steady, n_jittery, n_stragglers):
    """Build the sensor pool."""
    sensors = []
    sid = 0

    # --- Steady: near in-order delivery ---
    for _ in range(n_steady):
        sid += 1
        sensors.append(Sensor(
            sensor_id=f"sensor_{sid:04d}", role="steady",
            events_per_min=random.uniform(30, 120),
            delay_ms_lo=0, delay_ms_hi=50,
            straggler_rate=0.0, straggler_delay_ms=0,
        ))

    # --- Jittery: wide random network delay ---
    for _ in range(n_jittery):
        sid += 1
        sensors.append(Sensor(
            sensor_id=f"sensor_{sid:04d}", role="jittery",
            events_per_min=random.uniform(60, 240),
            delay_ms_lo=0, delay_ms_hi=2000,
            straggler_rate=0.0, straggler_delay_ms=0,
        ))

    # --- Stragglers: mostly fine, occasionally very late ---
    for _ in range(n_stragglers):
        sid += 1
        sensors.append(Sensor(
            sensor_id=f"sensor_{sid:04d}", role="straggler",
            events_per_min=random.uniform(20, 60),
            delay_ms_lo=0, delay_ms_hi=200,
            straggler_rate=0.05, straggler_delay_ms=15_000,
        ))

    return sensors


# ---------------------------------------------------------------------------
# Event generation
# ---------------------------------------------------------------------------

def _make_event(sensor: Sensor, now_ms: int) -> tuple[int, dict]:
    """Return (delivery time in ms, event) for one reading taken at *now_ms*."""
    delay = random.randint(sensor.delay_ms_lo, sensor.delay_ms_hi)
    if random.random() < sensor.straggler_rate:
        delay += sensor.straggler_delay_ms

    event = {
        "event_id": f"evt_{uuid.uuid4().hex[:12]}",
        "timestamp": now_ms,
        "sensor_id": sensor.sensor_id,
        "role": sensor.role,
        "value": round(random.gauss(20.0, 5.0), 3),
        "delay_ms": delay,
    }
    return now_ms + delay, event


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

def _ensure_topics(bootstrap_servers, topics):
    """Create Kafka topics if they don't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    new_topics = [NewTopic(t, num_partitions=1, replication_factor=3) for t in topics]
    fs = admin.create_topics(new_topics)
    for topic, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{topic}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{topic}' already exists")
            else:
                raise


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Out-of-order event generator")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="raw-events")
    parser.add_argument("--steady", type=int, default=6)
    parser.add_argument("--jittery", type=int, default=2)
    parser.add_argument("--stragglers", type=int, default=1)
    parser.add_argument("--eps", type=float, default=50, help="Target events/sec")
    args = parser.parse_args()

    sensors = _create_sensors(args.steady, args.jittery, args.stragglers)
    weights = [s.events_per_min for s in sensors]

    print(f"Generating to topic '{args.topic}' at ~{args.eps} events/sec")
    print(f"Sensors: {len(sensors)} total")
    for s in sensors:
        print(f"  {s.sensor_id}  {s.role:<10s} ~{s.events_per_min:>6.0f} epm  "
              f"delay={s.delay_ms_lo}-{s.delay_ms_hi}ms")

    _ensure_topics(args.bootstrap_servers, [args.topic])

    producer = Producer({
        "bootstrap.servers": args.bootstrap_servers,
        "acks": "all",
        "client.id": "out-of-order-generator",
    })

    # readings wait here until their simulated network delay has passed
    in_flight: list[tuple[int, int, dict]] = []
    seq = 0
    count = 0
    delay = 1.0 / args.eps

    while running:
        now = int(time.time() * 1000)
        sensor = random.choices(sensors, weights=weights, k=1)[0]
        deliver_at, event = _make_event(sensor, now)
        heapq.heappush(in_flight, (deliver_at, seq, event))
        seq += 1

        while in_flight and in_flight[0][0] <= now:
            _, _, due = heapq.heappop(in_flight)
            producer.produce(
                topic=args.topic,
                key=due["sensor_id"].encode(),
                value=json.dumps(due),
            )
            count += 1
            if count % 500 == 0:
                print(f"  ... {count} events produced, {len(in_flight)} in flight")
        producer.poll(0)

        time.sleep(delay)

    producer.flush()
    print(f"Done. {count} events produced, {len(in_flight)} never delivered.")


if __name__ == "__main__":
    main()
