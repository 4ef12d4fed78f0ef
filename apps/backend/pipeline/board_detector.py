"""
Job board detection from a posting URL.

Identifies the ATS vendor and pulls out the company slug / job id pair that the
vendor API fetchers need.
"""

import re
import logging
from dataclasses import dataclass, replace
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse

logger = logging.getLogger(__name__)

API_SUPPORTED_BOARDS = frozenset({'greenhouse', 'lever'})
# Boards that require auth, heavy JS rendering, or block scraping
LIMITED_EXTRACTION_BOARDS = frozenset({'linkedin', 'indeed', 'glassdoor'})
LIMITED_EXTRACTION_REASONS = {
    'linkedin': "LinkedIn requires authentication for full job details",
    'indeed': "Indeed limits public access to job content",
    'glassdoor': "Glassdoor requires authentication for full job details",
}

# Marketing pages embed Greenhouse boards with a script tag carrying the board key
GREENHOUSE_EMBED_KEY_RE = re.compile(r'embed/job_board/js\?for=([A-Za-z0-9_-]+)')
GREENHOUSE_EMBED_URL = "https://job-boards.greenhouse.io/embed/job_board"

# (board, host fragment) in detection order
HOST_PATTERNS = (
    ('greenhouse', 'greenhouse.io'),
    ('lever', 'lever.co'),
    ('linkedin', 'linkedin.com'),
    ('indeed', 'indeed.com'),
    ('glassdoor', 'glassdoor.com'),
    ('workable', 'workable.com'),
    ('jobvite', 'jobvite.com'),
    ('icims', 'icims.com'),
    ('smartrecruiters', 'smartrecruiters.com'),
    ('bamboohr', 'bamboohr.com'),
    ('ashbyhq', 'ashbyhq.com'),
)

GENERIC_JOB_ID_PATTERNS = (
    re.compile(r'/jobs?/(\d+)'),
    re.compile(r'/positions?/(\d+)'),
    re.compile(r'/careers?/(\d+)'),
    re.compile(r'/job/([^/?#]+)'),
    re.compile(r'/position/([^/?#]+)'),
    re.compile(r'[?&]job_id=([^&#]+)'),
    re.compile(r'[?&]gh_jid=([^&#]+)'),
)


@dataclass(frozen=True)
class BoardInfo:
    board_type: str
    company_slug: Optional[str] = None
    job_id: Optional[str] = None

    @property
    def api_supported(self) -> bool:
        return self.board_type in API_SUPPORTED_BOARDS

    @property
    def limited_extraction(self) -> bool:
        return self.board_type in LIMITED_EXTRACTION_BOARDS

    @property
    def can_use_api(self) -> bool:
        return self.api_supported and bool(self.company_slug)

    def to_dict(self) -> dict:
        return {
            "board_type": self.board_type,
            "company_slug": self.company_slug,
            "job_id": self.job_id,
            "api_supported": self.api_supported,
            "limited_extraction": self.limited_extraction,
        }


def _path_segments(path: str):
    return [segment for segment in path.split('/') if segment]


def _detect_type(url: str, host: str) -> str:
    if 'gh_jid=' in url:
        return 'greenhouse'
    for board, fragment in HOST_PATTERNS:
        if fragment in host:
            return board
    return 'unknown'


def _company_slug(board: str, host: str, segments) -> Optional[str]:
    if board == 'greenhouse':
        # boards.greenhouse.io/<company>/jobs/<id> and job-boards.greenhouse.io/<company>/...
        if 'greenhouse.io' in host and segments and segments[0] not in ('embed',):
            return segments[0]
        return None
    if board == 'lever':
        return segments[0] if segments else None
    if board == 'workable':
        return segments[0] if segments else None
    if board == 'ashbyhq':
        return segments[0] if segments else None
    return None


def _job_id(board: str, url: str, segments) -> Optional[str]:
    if board == 'lever' and len(segments) >= 2:
        return segments[1]
    if board == 'ashbyhq' and len(segments) >= 2:
        return segments[1]
    if board == 'linkedin':
        match = re.search(r'/jobs/view/(\d+)', url) or re.search(r'currentJobId=(\d+)', url)
        return match.group(1) if match else None
    for pattern in GENERIC_JOB_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def detect_board(url: str) -> BoardInfo:
    """Detect the job board for a URL. Malformed input yields an 'unknown' board."""
    url = url or ''
    try:
        parsed = urlparse(url)
        host = (parsed.hostname or '').lower()
    except ValueError:
        return BoardInfo(board_type='unknown')

    board = _detect_type(url, host)
    segments = _path_segments(parsed.path)
    info = BoardInfo(
        board_type=board,
        company_slug=_company_slug(board, host, segments),
        job_id=_job_id(board, url, segments),
    )
    if info.limited_extraction:
        logger.info(f"[board_detector] {board} pages have limited extraction support: {url}")
    return info


def query_param(url: Optional[str], key: str) -> Optional[str]:
    try:
        values = parse_qs(urlparse(url or '').query).get(key)
    except ValueError:
        return None
    return values[0] if values else None


def greenhouse_embed_key(html: Optional[str]) -> Optional[str]:
    match = GREENHOUSE_EMBED_KEY_RE.search(html or '')
    return match.group(1) if match else None


def greenhouse_embed_url(board_key: str, job_id: str, source: Optional[str] = None) -> str:
    query = {"for": board_key, "gh_jid": job_id}
    if source:
        query["gh_src"] = source
    return f"{GREENHOUSE_EMBED_URL}?{urlencode(query)}"


def resolve_embedded_board(board: BoardInfo, url: str, html: Optional[str]) -> Optional[BoardInfo]:
    """
    Fill in the Greenhouse board key for a ``gh_jid`` page hosted on a company site.

    Returns None when the page is not such an embed. Values already found in
    the URL are kept.
    """
    if board.board_type != 'greenhouse':
        return None
    job_id = query_param(url, 'gh_jid')
    board_key = greenhouse_embed_key(html)
    if not job_id or not board_key:
        return None
    return replace(board, company_slug=board.company_slug or board_key, job_id=board.job_id or job_id)
