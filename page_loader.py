#!/usr/bin/env python3
import argparse
import errno
import logging
import os
import posixpath
import re
import stat
import sys
import tomllib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urldefrag, urljoin, urlparse

import requests
import yaml
from bs4 import BeautifulSoup, FeatureNotFound
from bs4.element import Tag
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")
SLUG_RE = re.compile(r"[^A-Za-z0-9]+")

HTML_EXTS = {".html", ".htm"}
ASSET_EXTS = HTML_EXTS | {
    ".css",
    ".js",
    ".mjs",
    ".json",
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".svg",
    ".webp",
    ".ico",
    ".bmp",
    ".avif",
    ".woff",
    ".woff2",
    ".ttf",
    ".otf",
    ".eot",
    ".mp4",
    ".webm",
    ".mp3",
    ".ogg",
    ".wav",
    ".xml",
    ".txt",
    ".pdf",
    ".map",
    ".webmanifest",
}

STYLESHEET_RELS = {"stylesheet"}
ICON_RELS = {"icon", "apple-touch-icon"}
SCRIPT_RELS = {"modulepreload"}
DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass
class Settings:
    timeout: float = 15.0
    workers: int = 16
    retries: int = 0
    headers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))


# -------------------- Errors --------------------


class PageLoaderError(Exception):
    """Base class for every error raised out of archive_page."""


class NetworkError(PageLoaderError):
    def __init__(self, url: str, message: str):
        super().__init__(message)
        self.url = url


class HttpStatusError(PageLoaderError):
    def __init__(self, url: str, status: int):
        super().__init__(f"Request failed with status code {status}")
        self.url = url
        self.status = status


FS_ERROR_KINDS = {
    errno.ENOENT: "not_found",
    errno.EACCES: "permission_denied",
    errno.EPERM: "permission_denied",
    errno.ENOTDIR: "not_a_directory",
}


class FilesystemError(PageLoaderError):
    """OS failure on the output directory, worded like the host's own errors.

    The message has the form ``ENOENT: no such file or directory, mkdir
    '/out/site_files'``: symbolic errno, lower-cased strerror, the syscall
    that failed and the exact path it was given.
    """

    def __init__(self, err_no: int, syscall: str, path: Union[str, Path]):
        self.errno = err_no
        self.syscall = syscall
        self.path = str(path)
        self.kind = FS_ERROR_KINDS.get(err_no, "other")
        code = errno.errorcode.get(err_no, "EUNKNOWN")
        reason = os.strerror(err_no).lower()
        super().__init__(f"{code}: {reason}, {syscall} '{self.path}'")

    @classmethod
    def from_os_error(cls, exc: OSError, syscall: str, path: Union[str, Path]):
        return cls(exc.errno or errno.EIO, syscall, path)


# -------------------- Naming --------------------


def split_known_ext(value: str, exts=ASSET_EXTS) -> Tuple[str, str]:
    stem, ext = posixpath.splitext(value)
    if ext and ext.lower() in exts:
        return stem, ext
    return value, ""


def to_file_slug(url_or_path: str, *, page: bool = False) -> str:
    """Map a URL or path to a flat, filesystem-safe name.

    Runs of non-alphanumeric characters collapse into a single ``-``. A known
    trailing extension is kept verbatim; pages without an HTML extension get
    ``.html`` appended, assets never get a synthetic one.

    >>> to_file_slug("https://ru.hexlet.io/courses", page=True)
    'ru-hexlet-io-courses.html'
    >>> to_file_slug("ru.hexlet.io/assets/application.css")
    'ru-hexlet-io-assets-application.css'
    """
    value = SCHEME_RE.sub("", url_or_path.strip())
    stem, ext = split_known_ext(value, HTML_EXTS if page else ASSET_EXTS)
    slug = SLUG_RE.sub("-", stem)
    if page and not ext:
        ext = ".html"
    return slug + ext


def host_and_path(url: str) -> str:
    p = urlparse(url)
    return f"{p.netloc.lower()}{p.path}"


def page_stem(url: str) -> str:
    stem, _ = split_known_ext(host_and_path(url), HTML_EXTS)
    return SLUG_RE.sub("-", stem)


def page_filename(url: str) -> str:
    return page_stem(url) + ".html"


def asset_dir_name(url: str) -> str:
    return page_stem(url) + "_files"


def asset_filename(url: str) -> str:
    return to_file_slug(host_and_path(url))


# -------------------- URL utils --------------------


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def origin_of(url: str) -> Tuple[str, str, Optional[int]]:
    p = urlparse(url)
    scheme = p.scheme.lower()
    try:
        port = p.port
    except ValueError:
        port = None
    return scheme, (p.hostname or ""), port or DEFAULT_PORTS.get(scheme)


def is_same_origin(base: str, other: str) -> bool:
    return origin_of(base) == origin_of(other)


def abs_url(base: str, u: str) -> str:
    absolute, _ = urldefrag(urljoin(base, u.strip()))
    return absolute


# -------------------- HTML utils --------------------


def bs4_parse(html: Union[str, bytes]) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        return urljoin(fallback, tag["href"])
    return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="html")


# -------------------- Extraction --------------------


@dataclass(frozen=True)
class AssetRef:
    original_url: str
    local_path: str
    kind: str


@dataclass(frozen=True)
class AttributeEdit:
    tag: Tag
    attribute: str
    value: str

    def apply(self) -> None:
        self.tag[self.attribute] = self.value


@dataclass
class ExtractedAssets:
    """In-scope asset refs of a page plus every place each one is referenced."""

    refs: List[AssetRef]
    locations: Dict[str, List[Tuple[Tag, str]]]
    # cross-origin values that only resolved through <base href>
    pinned: List[AttributeEdit] = field(default_factory=list)

    def edits(self, ref: AssetRef) -> List[AttributeEdit]:
        return [
            AttributeEdit(tag, attr, ref.local_path)
            for tag, attr in self.locations.get(ref.original_url, [])
        ]

    def apply(self, ref: AssetRef) -> None:
        for edit in self.edits(ref):
            edit.apply()

    def apply_all(self) -> None:
        for ref in self.refs:
            self.apply(ref)
        for edit in self.pinned:
            edit.apply()


def link_kind(tag: Tag) -> str:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    rels = {r.lower() for r in rel}
    if rels & STYLESHEET_RELS:
        return "stylesheet"
    if rels & ICON_RELS:
        return "image"
    if rels & SCRIPT_RELS:
        return "script"
    return "link"


def iter_asset_attributes(soup: BeautifulSoup):
    for tag in soup.select("img[src]"):
        yield tag, "src", "image"
    for tag in soup.select("script[src]"):
        yield tag, "src", "script"
    for tag in soup.select("link[href]"):
        yield tag, "href", link_kind(tag)


def extract_assets(soup: BeautifulSoup, page_url: str) -> ExtractedAssets:
    base = effective_base_url(soup, page_url)
    dir_name = asset_dir_name(page_url)
    refs: Dict[str, AssetRef] = {}
    locations: Dict[str, List[Tuple[Tag, str]]] = {}
    pinned: List[AttributeEdit] = []
    for tag, attr, kind in iter_asset_attributes(soup):
        val = tag.get(attr)
        if not can_fetch_url(val):
            continue
        absu = abs_url(base, val)
        if not is_same_origin(page_url, absu):
            logging.debug("skip cross-origin asset: %s", absu)
            if base != page_url and abs_url(page_url, val) != absu:
                pinned.append(AttributeEdit(tag, attr, absu))
            continue
        if absu not in refs:
            local_path = posixpath.join(dir_name, asset_filename(absu))
            refs[absu] = AssetRef(absu, local_path, kind)
        locations.setdefault(absu, []).append((tag, attr))
    return ExtractedAssets(list(refs.values()), locations, pinned)


def detach_base_href(soup: BeautifulSoup) -> None:
    """Drop <base href> so rewritten paths resolve beside the saved page."""
    for tag in soup.find_all("base", href=True):
        del tag["href"]
        if not tag.attrs:
            tag.decompose()


# -------------------- HTTP --------------------


def build_session(settings: Optional[Settings] = None) -> requests.Session:
    settings = settings or Settings()
    s = requests.Session()
    retry = Retry(
        total=settings.retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    pool_size = max(10, settings.workers)
    adapter = HTTPAdapter(
        max_retries=retry, pool_connections=pool_size, pool_maxsize=pool_size
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(settings.headers)
    return s


def fetch(session: requests.Session, url: str, *, timeout: float) -> bytes:
    try:
        resp = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise NetworkError(url, str(e)) from e
    if not 200 <= resp.status_code < 300:
        raise HttpStatusError(url, resp.status_code)
    return resp.content


# -------------------- Downloaders --------------------


@dataclass(frozen=True)
class Downloaded:
    ref: AssetRef
    content: bytes
    ok = True


@dataclass(frozen=True)
class DownloadFailed:
    ref: AssetRef
    error: Union[NetworkError, HttpStatusError]
    ok = False


DownloadOutcome = Union[Downloaded, DownloadFailed]


def download_one(
    session: requests.Session, ref: AssetRef, settings: Settings
) -> DownloadOutcome:
    try:
        content = fetch(session, ref.original_url, timeout=settings.timeout)
    except (NetworkError, HttpStatusError) as e:
        logging.warning("failed %s -> %s", ref.original_url, e)
        return DownloadFailed(ref, e)
    logging.debug("fetched asset: %s (%d bytes)", ref.original_url, len(content))
    return Downloaded(ref, content)


def fetch_all(
    session: requests.Session,
    refs: Sequence[AssetRef],
    settings: Optional[Settings] = None,
) -> List[DownloadOutcome]:
    settings = settings or Settings()
    if not refs:
        return []
    with ThreadPoolExecutor(max_workers=max(1, settings.workers)) as pool:
        futures = [pool.submit(download_one, session, ref, settings) for ref in refs]
        return [fut.result() for fut in futures]


# -------------------- Output --------------------


@dataclass(frozen=True)
class PageJob:
    source_url: str
    output_dir: str

    @classmethod
    def create(cls, output_dir: Union[str, Path], page_url: str) -> "PageJob":
        return cls(str(page_url), os.path.abspath(os.fspath(output_dir)))

    @property
    def asset_dir_name(self) -> str:
        return asset_dir_name(self.source_url)

    @property
    def asset_dir_path(self) -> str:
        return os.path.join(self.output_dir, self.asset_dir_name)

    @property
    def page_path(self) -> str:
        return os.path.join(self.output_dir, page_filename(self.source_url))


def ensure_asset_dir(path: str) -> None:
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        try:
            os.mkdir(path)
        except OSError as e:
            raise FilesystemError.from_os_error(e, "mkdir", path) from e
        return
    except OSError as e:
        raise FilesystemError.from_os_error(e, "lstat", path) from e
    if not stat.S_ISDIR(st.st_mode):
        raise FilesystemError(errno.ENOTDIR, "mkdir", path)


def write_file(path: str, data: Union[str, bytes]) -> None:
    try:
        if isinstance(data, str):
            Path(path).write_text(data, encoding="utf-8")
        else:
            Path(path).write_bytes(data)
    except OSError as e:
        raise FilesystemError.from_os_error(e, "open", path) from e


def save_assets(job: PageJob, outcomes: Sequence[DownloadOutcome]) -> List[str]:
    saved: List[str] = []
    for outcome in outcomes:
        if not outcome.ok:
            continue
        local_path = os.path.join(job.output_dir, *outcome.ref.local_path.split("/"))
        try:
            write_file(local_path, outcome.content)
        except FilesystemError as e:
            logging.warning("failed to write %s: %s", local_path, e)
            continue
        logging.info("downloaded asset: %s -> %s", outcome.ref.original_url, local_path)
        saved.append(local_path)
    return saved


# -------------------- Main: single page --------------------


def archive_page(
    output_dir: Union[str, Path],
    page_url: str,
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
) -> Path:
    """Save ``page_url`` and its same-origin assets under ``output_dir``.

    Writes ``<slug>.html`` and ``<slug>_files/`` and returns the page path.
    Page fetch and output directory failures raise; asset failures are logged
    and leave that one asset unwritten while its reference is still rewritten.
    """
    settings = settings or Settings()
    job = PageJob.create(output_dir, page_url)
    own_session = session is None
    session = session or build_session(settings)
    try:
        logging.info("GET %s", job.source_url)
        html = fetch(session, job.source_url, timeout=settings.timeout)

        ensure_asset_dir(job.asset_dir_path)

        soup = bs4_parse(html)
        assets = extract_assets(soup, job.source_url)
        logging.info("found %d local assets", len(assets.refs))

        outcomes = fetch_all(session, assets.refs, settings)
        saved = save_assets(job, outcomes)
        assets.apply_all()
        detach_base_href(soup)

        write_file(job.page_path, serialize_html(soup))
        failed = len(outcomes) - len(saved)
        if failed:
            logging.warning("%d of %d assets not saved", failed, len(outcomes))
        logging.info("saved page: %s", job.page_path)
        return Path(job.page_path)
    finally:
        if own_session:
            session.close()


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise RuntimeError("Top-level YAML must be a mapping")
        return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="page-loader",
        description="Download a page with its local assets for offline use.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("url", help="http(s) URL")
    p.add_argument(
        "-o", "--output", default=os.getcwd(), help="output directory (default: cwd)"
    )
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument("--workers", type=int, default=16, help="concurrent downloads")
    p.add_argument(
        "--retries", type=int, default=0, help="transport retries per request"
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        flat = dict(cfg)
        if isinstance(cfg.get("general"), dict):
            flat.update(cfg["general"])
        parser.set_defaults(**flat)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    if urlparse(args.url).scheme not in {"http", "https"}:
        print("Invalid URL. Use http:// or https://", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    settings = Settings(
        timeout=args.timeout,
        workers=max(1, args.workers),
        retries=max(0, args.retries),
    )
    try:
        page_path = archive_page(args.output, args.url, settings)
    except PageLoaderError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    print(f"Page was successfully downloaded into '{page_path}'")


if __name__ == "__main__":
    main()
