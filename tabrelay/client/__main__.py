# python -m tabrelay.client --file sample.wav --transport ws

import argparse
import asyncio
from urllib.parse import urlparse

from pydantic import BaseModel

from tabrelay.client.channel import HttpRelayChannel, RelayChannel, WebSocketRelayChannel
from tabrelay.client.encoder import FileEncoder
from tabrelay.core.logs import setup_logging
from tabrelay.models.messages import ErrorMessage, StatusMessage, TranscriptMessage, UpstreamConfigOverrides
from tabrelay.models.session import CaptureTarget


def ws_url(base_url: str) -> str:
    parsed = urlparse(base_url)
    scheme = "wss" if parsed.scheme == "https" else "ws"
    return parsed._replace(scheme=scheme, path="/ws/transcribe").geturl()


def build_channel(transport: str, base_url: str) -> RelayChannel:
    if transport == "ws":
        return WebSocketRelayChannel(ws_url(base_url))
    return HttpRelayChannel(base_url)


async def run(base_url, transport, wav_path, target, language, chunk_seconds, realtime):
    encoder = FileEncoder(wav_path, chunk_seconds=chunk_seconds)
    channel = build_channel(transport, base_url)
    finals = []

    def on_event(message: BaseModel):
        if isinstance(message, TranscriptMessage):
            if message.isFinal:
                finals.append(message.text)
                print(f"[final] {message.text}")
            else:
                print(f"[interim] {message.text}")
        elif isinstance(message, StatusMessage):
            print(f"-- {message.state}: {message.message}")
        elif isinstance(message, ErrorMessage):
            print(f"!! {message.code}: {message.message}")

    channel.on_event(on_event)
    config = UpstreamConfigOverrides(
        encoding=encoder.encoding,
        sample_rate_hertz=encoder.sample_rate,
        language_code=language,
    )
    session_id = await channel.open(CaptureTarget.parse_key(target), config)
    print(f"Session started: {session_id} ({encoder.duration_sec:.1f}s of audio)")

    try:
        for chunk in encoder.chunks():
            await channel.send(chunk.payload)
            if realtime:
                await asyncio.sleep(chunk.duration_sec)
    finally:
        await channel.close()

    print("\n=== FULL TRANSCRIPT ===\n")
    print("".join(f"{line}\n" for line in finals))


if __name__ == "__main__":
    ap = argparse.ArgumentParser()
    ap.add_argument("--url", default="http://127.0.0.1:7214", help="Relay base URL")
    ap.add_argument("--transport", choices=["ws", "rest"], default="ws")
    ap.add_argument("--file", default="sample.wav", help="Path to an audio file readable by soundfile")
    ap.add_argument("--target", default="device:file", help="Capture target key")
    ap.add_argument("--lang", default="en-US", help="Language code for the recognizer")
    ap.add_argument("--chunk-seconds", type=float, default=0.5)
    ap.add_argument("--no-realtime", action="store_true", help="Send chunks as fast as possible")
    ap.add_argument("--log-level", default="WARNING")
    args = ap.parse_args()
    setup_logging(level=args.log_level)
    asyncio.run(run(args.url, args.transport, args.file, args.target, args.lang,
                    args.chunk_seconds, not args.no_realtime))
