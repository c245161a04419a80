"""
Uploads a video to a running converter and prints its progress until the job finishes.

Usage:
    python scripts/convert_client.py path/to/video.mp4
"""
import os
import sys
import json
import uuid
import logging
import threading
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

load_dotenv()

API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
SUBSCRIBED_PREFIX = ": subscribed"
TERMINAL_STATUSES = ("complete", "error")


def parse_sse_line(line) -> Optional[Dict[str, Any]]:
    """Return the JSON payload of a ``data:`` line, None for anything else."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    if not line or not line.startswith("data:"):
        return None
    try:
        payload = json.loads(line[len("data:"):].strip())
    except json.JSONDecodeError:
        logger.warning(f"Ignoring malformed event: {line}")
        return None
    return payload if isinstance(payload, dict) else None


def follow_progress(base_url: str, file_id: str, ready: threading.Event, events: List[Dict[str, Any]]):
    """Read the job's SSE stream; ``ready`` is set once the server confirms the subscription."""
    try:
        with requests.get(f"{base_url}/api/conversion-status/{file_id}", stream=True, timeout=(5, None)) as response:
            response.raise_for_status()
            for line in response.iter_lines(decode_unicode=True):
                if line and line.startswith(SUBSCRIBED_PREFIX):
                    ready.set()
                    continue
                payload = parse_sse_line(line)
                if payload is None:
                    continue
                events.append(payload)
                logger.info(f"[{payload.get('percentComplete')}%] {payload.get('status')}: {payload.get('message')}")
                if payload.get("status") in TERMINAL_STATUSES:
                    break
    except requests.RequestException as e:
        logger.error(f"Progress stream failed: {str(e)}")
    finally:
        ready.set()


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        logger.error("Usage: convert_client.py <video file>")
        return 2

    file_path = argv[0]
    if not os.path.exists(file_path):
        logger.error(f"File not found: {file_path}")
        return 1

    file_id = str(uuid.uuid4())
    events: List[Dict[str, Any]] = []
    ready = threading.Event()
    listener = threading.Thread(target=follow_progress, args=(API_BASE_URL, file_id, ready, events), daemon=True)
    listener.start()
    ready.wait(timeout=10)

    logger.info(f"Uploading {file_path} as {file_id}...")
    with open(file_path, "rb") as f:
        response = requests.post(
            f"{API_BASE_URL}/api/convert-to-webm",
            files={"file": (os.path.basename(file_path), f)},
            data={"fileId": file_id},
        )
    if response.status_code != 200:
        logger.error(f"Upload failed: {response.text}")
        return 1
    upload = response.json()
    logger.info(f"Upload accepted: {upload['fileName']} ({upload['size']} bytes)")

    listener.join()
    if not events or events[-1].get("status") != "complete":
        logger.error("Conversion did not complete")
        return 1

    logger.info(f"Download: {upload['fileDownloadUri']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
