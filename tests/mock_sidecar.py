"""Scripted sidecar used by the end-to-end tests

Run as `python mock_sidecar.py <mode>`. Speaks the JSONL protocol on
stdin/stdout; the mode selects how well (or badly) it behaves.
"""

import json
import signal
import sys
import time

CONTRACT_VERSION = "abp/v0.1"
EVENT_COUNT = 5


def send(obj):
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()


def send_raw(text):
    sys.stdout.write(text + "\n")
    sys.stdout.flush()


def hello(version=CONTRACT_VERSION):
    send({
        "t": "hello",
        "contract_version": version,
        "backend": {"id": "mock", "backend_version": "1.0", "adapter_version": "0.1"},
        "capabilities": {"streaming": "native"},
        "mode": "mapped",
    })


def event(ref_id, i, kind="assistant_delta"):
    send({
        "t": "event",
        "ref_id": ref_id,
        "event": {"ts": "2025-01-01T00:00:00Z", "type": kind, "text": f"chunk-{i}", "seq": i},
    })


def final(ref_id, events):
    send({"t": "final", "ref_id": ref_id, "receipt": {"outcome": "complete", "events": events}})


def runs():
    """Yield each run frame read from stdin until it closes"""
    while True:
        line = sys.stdin.readline()
        if not line:
            return
        line = line.strip()
        if not line:
            continue
        msg = json.loads(line)
        if msg.get("t") == "run":
            yield msg


def hang():
    while True:
        time.sleep(60)


def serve(count=EVENT_COUNT):
    for msg in runs():
        for i in range(count):
            event(msg["id"], i)
        final(msg["id"], count)


def main():
    mode = sys.argv[1] if len(sys.argv) > 1 else "default"

    if mode == "hang":
        hang()
    if mode == "no_hello":
        event("r0", 0)
        hang()
    if mode == "bad_hello":
        send_raw("{not json")
        hang()
    if mode == "wrong_version":
        hello("abp/v0.2")
        hang()

    if mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    if mode == "stderr":
        sys.stderr.write("mock sidecar starting\n")
        sys.stderr.flush()

    hello()

    if mode == "idle_exit":
        sys.exit(0)
    if mode == "idle_chatter":
        event("stray", 0)
        hang()

    if mode in ("default", "stderr"):
        serve()
        return

    if mode == "multi_run":
        first = True
        for msg in runs():
            if first:
                first = False
                send({"t": "fatal", "ref_id": msg["id"], "error": "boom"})
                continue
            for i in range(2):
                event(msg["id"], i)
            final(msg["id"], 2)
        return

    for msg in runs():
        ref_id = msg["id"]
        if mode == "bad_json":
            event(ref_id, 0)
            send_raw("{this is not json")
            event(ref_id, 1)
            final(ref_id, 2)
        elif mode == "wrong_ref":
            event(ref_id, 0)
            event("someone-else", 1)
        elif mode == "wrong_ref_final":
            event(ref_id, 0)
            final("someone-else", 1)
            hang()
        elif mode == "wrong_ref_fatal":
            event(ref_id, 0)
            send({"t": "fatal", "ref_id": "someone-else", "error": "not yours"})
            hang()
        elif mode == "hello_mid_run":
            event(ref_id, 0)
            hello()
            hang()
        elif mode == "run_mid_run":
            event(ref_id, 0)
            send({"t": "run", "id": "someone-else", "work_order": {}})
            hang()
        elif mode == "fatal_session":
            event(ref_id, 0)
            send({"t": "fatal", "ref_id": None, "error": "backend unavailable"})
            hang()
        elif mode == "crash":
            event(ref_id, 0)
            event(ref_id, 1)
            sys.exit(3)
        elif mode in ("slow", "stubborn"):
            event(ref_id, 0)
            event(ref_id, 1)
            hang()
        elif mode == "echo":
            send({
                "t": "event",
                "ref_id": ref_id,
                "event": {"ts": "2025-01-01T00:00:00Z", "type": "echo", "work_order": msg["work_order"]},
            })
            final(ref_id, 1)


if __name__ == "__main__":
    main()
