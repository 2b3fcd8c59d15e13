import os
import re
import glob
import logging
from typing import Optional

import yt_dlp

logger = logging.getLogger(__name__)

_YOUTUBE_ID_PATTERN = re.compile(
    r"(?:youtube\.com/(?:[^/]+/.+/|(?:v|e(?:mbed)?|shorts|live)/|.*[?&]v=)|youtu\.be/)([^\"&?/\s]{11})"
)
_BARE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")


def extract_video_id(url_or_id: str) -> Optional[str]:
    """
    Return the 11-character YouTube video id from a watch/short/embed/youtu.be
    URL, or the input itself when it already is a bare id.
    """
    value = (url_or_id or "").strip()
    if not value:
        return None
    match = _YOUTUBE_ID_PATTERN.search(value)
    if match:
        return match.group(1)
    if _BARE_ID_PATTERN.match(value):
        return value
    return None


def download_audio(url: str, output_path: str) -> str:
    """
    Download the best audio-only stream for `url` using yt-dlp.
    Returns the path of the downloaded file.
    """
    ydl_opts = {
        'format': 'bestaudio[ext=m4a]/bestaudio/best',
        'outtmpl': output_path,
        'quiet': True,
        'no_warnings': True,
        'overwrites': True,
        'noplaylist': True,
    }

    try:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            ydl.download([url])
            if os.path.exists(output_path):
                return output_path

            # yt-dlp may append the real extension to the template
            base_name = os.path.splitext(output_path)[0]
            matches = glob.glob(f"{base_name}*")
            if matches:
                return matches[0]

            raise FileNotFoundError("Audio not found after download")

    except Exception as e:
        logger.error(f"Error downloading audio: {e}")
        raise
