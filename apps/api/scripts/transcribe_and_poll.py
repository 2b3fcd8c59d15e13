"""
Submit a file or YouTube link to a running API, poll until the transcription
settles, then optionally generate study content.

    python scripts/transcribe_and_poll.py lecture.mp3 --language en --study
    python scripts/transcribe_and_poll.py "https://youtu.be/jNQXAC9IVRw"
"""

import argparse
import asyncio
import mimetypes
import os
import sys

import httpx

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings  # noqa: E402
from services.status_poller import poll_until_terminal  # noqa: E402


async def _submit(client: httpx.AsyncClient, media: str, language: str) -> dict:
    if media.startswith(("http://", "https://")):
        response = await client.post("/media/url", json={"url": media, "language": language})
    else:
        mime_type = mimetypes.guess_type(media)[0] or "application/octet-stream"
        with open(media, "rb") as handle:
            response = await client.post(
                "/media/upload",
                files={"file": (os.path.basename(media), handle, mime_type)},
                data={"language": language},
            )
    response.raise_for_status()
    return response.json()


async def run(args: argparse.Namespace) -> int:
    headers = {"Authorization": f"Bearer {args.token}"} if args.token else {}
    async with httpx.AsyncClient(base_url=args.api, headers=headers, timeout=60.0) as client:
        print(f"📡 Submitting {args.media}...")
        asset = await _submit(client, args.media, args.language)
        asset_id = asset["asset_id"]
        print(f"✅ Asset queued. ID: {asset_id} (job {asset.get('queue_job_id')})")

        async def fetch_status() -> dict:
            response = await client.get(f"/media/{asset_id}/status")
            response.raise_for_status()
            status = response.json()
            print(f"   Status: {status['status']}")
            return status

        outcome = await poll_until_terminal(
            fetch_status,
            interval_seconds=args.interval,
            max_attempts=args.attempts,
        )
        if outcome.timed_out:
            print(f"⏳ Still {outcome.status} after {outcome.attempts} checks. Query /media/{asset_id} later.")
            return 2
        if outcome.status == "failed":
            print(f"❌ Transcription failed: {outcome.payload.get('error')}")
            return 1

        transcript_id = outcome.payload["transcript_id"]
        transcript = (await client.get(f"/transcripts/{transcript_id}")).json()
        print(f"📝 Transcript {transcript_id} ({transcript['language']}, {len(transcript['segments'])} segments)")
        print(transcript["full_text"][:500])

        if args.study:
            response = await client.post(f"/study/{transcript_id}/generate", json={"language": args.language})
            response.raise_for_status()
            study = response.json()
            if study["status"] != "ok":
                print(f"⚠️ Study content skipped: {study['status']}")
                return 0
            print(f"📚 {len(study['flashcards'])} flashcards, {len(study['quiz'])} quiz questions")
            print(f"   Summary: {study.get('summary')}")
            if study.get("fallback_used"):
                print("   (generated partly with the local fallback)")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("media", help="Path to an audio/video file or a YouTube URL")
    parser.add_argument("--api", default=f"http://localhost:{settings.API_PORT}")
    parser.add_argument("--language", default="auto")
    parser.add_argument("--token", default=None, help="Caller bearer token")
    parser.add_argument("--interval", type=float, default=settings.POLL_INTERVAL_SECONDS)
    parser.add_argument("--attempts", type=int, default=settings.POLL_MAX_ATTEMPTS)
    parser.add_argument("--study", action="store_true", help="Generate study content after transcription")
    sys.exit(asyncio.run(run(parser.parse_args())))


if __name__ == "__main__":
    main()
