"""Stand-in for the agent CLI used by the supervisor tests.

Reads the prompt from stdin and answers in the CLI's stream-json shape.
The prompt picks the behaviour:

    contains "SLOW"         stream "OLD-RUN" deltas until killed
    contains "IGNORE-TERM"  like SLOW, but ignore SIGTERM
    contains "FAIL"         write to stderr and exit 2
    anything else           echo the prompt back as one streamed text block

If FAKE_AGENT_ARGV_FILE is set, argv is written there as JSON.
"""
from __future__ import annotations

import json
import os
import signal
import sys
import time
import uuid


def emit(record: dict) -> None:
    sys.stdout.write(json.dumps(record) + "\n")
    sys.stdout.flush()


def main() -> int:
    argv_file = os.environ.get("FAKE_AGENT_ARGV_FILE")
    if argv_file:
        with open(argv_file, "w") as fh:
            json.dump(sys.argv[1:], fh)

    prompt = sys.stdin.read()

    if "FAIL" in prompt:
        sys.stderr.write("boom: something broke\n")
        return 2

    emit({
        "type": "system",
        "subtype": "init",
        "session_id": "agent-conv-1",
        "model": "claude-sonnet-4",
    })

    if "SLOW" in prompt or "IGNORE-TERM" in prompt:
        if "IGNORE-TERM" in prompt:
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
        emit({
            "type": "assistant",
            "subtype": "content_block_start",
            "message": {"index": 0, "content_block": {"type": "text", "text": ""}},
        })
        for n in range(600):
            emit({
                "type": "assistant",
                "subtype": "content_block_delta",
                "uuid": str(uuid.uuid4()),
                "message": {"index": 0, "delta": {"type": "text_delta", "text": f"OLD-RUN-{n} "}},
            })
            time.sleep(0.05)
        return 0

    emit({
        "type": "assistant",
        "subtype": "content_block_start",
        "message": {"index": 0, "content_block": {"type": "text", "text": ""}},
    })
    text = "ECHO:" + prompt.rstrip("\n")
    for start in range(0, len(text), 7):
        emit({
            "type": "assistant",
            "subtype": "content_block_delta",
            "uuid": str(uuid.uuid4()),
            "message": {"index": 0, "delta": {"type": "text_delta", "text": text[start:start + 7]}},
        })
    emit({"type": "assistant", "subtype": "content_block_stop", "message": {"index": 0}})
    emit({
        "type": "result",
        "subtype": "success",
        "usage": {"input_tokens": 1000, "output_tokens": 500},
    })
    return 0


if __name__ == "__main__":
    sys.exit(main())
