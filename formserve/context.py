"""Per-request working context for multipart/form-data requests.

A context owns a working directory holding the uploaded (or remotely
downloaded) files, tracks the output paths produced by a handler and builds
the final output file, zipping it when there is more than one.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import threading
import time
import unicodedata
import uuid
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from email.message import Message
from io import BytesIO
from typing import Any, BinaryIO
from urllib.error import HTTPError, URLError
from urllib.request import Request as UrlRequest
from urllib.request import urlopen

from werkzeug.datastructures import Headers
from werkzeug.formparser import FormDataParser
from werkzeug.wrappers import Request, Response

from formserve.errors import SentinelHttpError, wrap_error
from formserve.formdata import FormData

_CHUNK_SIZE = 64 * 1024
_USER_AGENT = "formserve"
_TOKEN_RE = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+(?:/[!#$%&'*+\-.^_`|~0-9A-Za-z]+)?")

_log = logging.getLogger("formserve")


class ContextAlreadyClosedError(RuntimeError):
    """The context has already been cancelled."""

    def __init__(self) -> None:
        super().__init__("context already closed")


class OutOfBoundsOutputPathError(ValueError):
    """An output path is not within the context's working directory."""

    def __init__(self) -> None:
        super().__init__("output path is not within context's working directory")


class FilteredError(Exception):
    """A URL was rejected by the allow or deny list."""


@dataclass
class DownloadFromConfig:
    """Settings of the "download from" feature."""

    allow_list: re.Pattern[str] | None = None
    deny_list: re.Pattern[str] | None = None
    max_retry: int = 4
    disable: bool = False


@dataclass
class Exchange:
    """One HTTP request in flight: the request, per-request locals and the
    response being prepared."""

    request: Request | None = None
    locals: dict[str, Any] = field(default_factory=dict)
    response_headers: Headers = field(default_factory=Headers)
    response: Response | None = None

    def get(self, key: str, default: Any = None) -> Any:
        return self.locals.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.locals[key] = value


@dataclass
class _DownloadEntry:
    url: str
    extra_http_headers: dict[str, str]


class _BodyBudget:
    """Counts the bytes read for a request and enforces the body limit."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.total = 0
        self._lock = threading.Lock()

    def add(self, count: int) -> None:
        with self._lock:
            self.total += count
            total = self.total
        if self.limit and total > self.limit:
            raise wrap_error(
                ValueError(f"body limit reached (> {self.limit})"),
                SentinelHttpError(413, "Request Entity Too Large"),
            )


@dataclass
class Context:
    """The working state of one multipart/form-data request."""

    dir_path: str = ""
    values: dict[str, list[str]] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)
    logger: logging.Logger = field(default=_log)
    exchange: Exchange | None = None
    deadline: float | None = None
    output_paths: list[str] = field(default_factory=list)
    cancelled: bool = False
    _closed: threading.Event = field(default_factory=threading.Event, repr=False)

    def __enter__(self) -> Context:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()

    @property
    def request(self) -> Request | None:
        return self.exchange.request if self.exchange is not None else None

    @property
    def done(self) -> bool:
        """Whether the context was cancelled or its deadline has passed."""
        if self._closed.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def form_data(self) -> FormData:
        return FormData(values=self.values, files=self.files)

    def generate_path(self, extension: str) -> str:
        """Return a new UUID-named path in the working directory (no file is
        created)."""
        return f"{self.dir_path}/{uuid.uuid4()}{extension}"

    def generate_path_from_filename(self, filename: str) -> str:
        return f"{self.dir_path}/{filename}"

    def create_sub_directory(self, dir_name: str) -> str:
        path = f"{self.dir_path}/{dir_name}"
        os.makedirs(path, mode=0o755, exist_ok=True)
        return path

    def rename(self, old_path: str, new_path: str) -> None:
        self.logger.debug("rename %s to %s", old_path, new_path)
        os.rename(old_path, new_path)

    def add_output_paths(self, *args: str) -> None:
        """Register paths used later to build the output file."""
        if self.cancelled:
            raise ContextAlreadyClosedError()
        for path in args:
            if not path.startswith(self.dir_path):
                raise OutOfBoundsOutputPathError()
            self.output_paths.append(path)

    def build_output_file(self) -> str:
        """Return the single output path, or a zip archive of all of them."""
        if self.cancelled:
            raise ContextAlreadyClosedError()
        if not self.output_paths:
            raise ValueError("no output path")
        if len(self.output_paths) == 1:
            self.logger.debug(
                "only one output file '%s', skip archive creation", self.output_paths[0]
            )
            return self.output_paths[0]

        archive_path = self.generate_path(".zip")
        with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as archive:
            for output_path in self.output_paths:
                name = _base(output_path)
                if os.path.isdir(output_path):
                    for root, dirs, files in os.walk(output_path):
                        dirs.sort()
                        for file in sorted(files):
                            full = os.path.join(root, file)
                            relative = os.path.relpath(full, output_path).replace(os.sep, "/")
                            archive.write(full, arcname=f"{name}/{relative}")
                else:
                    archive.write(output_path, arcname=name)
        self.logger.debug("archive '%s' created", archive_path)
        return archive_path

    def output_filename(self, output_path: str) -> str:
        """Return the requested output filename (keeping the output's
        extension), or the output's own base name."""
        filename = self.exchange.get("outputFilename", "") if self.exchange else ""
        if not filename:
            return _base(output_path)
        return f"{filename}{_ext(output_path)}"

    def cancel(self) -> None:
        """Stop the context and remove its working directory."""
        if self.cancelled:
            return
        self._closed.set()
        if not self.dir_path:
            return
        try:
            shutil.rmtree(self.dir_path)
        except FileNotFoundError:
            pass
        except OSError as err:
            self.logger.error("remove context's working directory: %s", err)
            return
        self.logger.debug("'%s' context's working directory removed", self.dir_path)
        self.cancelled = True


def new_context(
    exchange: Exchange,
    logger: logging.Logger,
    work_root: str,
    timeout: float | timedelta,
    body_limit: int,
    download_from_cfg: DownloadFromConfig,
    trace_header: str,
    trace: str,
) -> Context:
    """Parse a multipart/form-data request into a new :class:`Context`.

    On failure the context is cancelled (its working directory removed)
    before the error propagates.
    """
    ctx = Context(
        logger=logger,
        exchange=exchange,
        deadline=time.monotonic() + _seconds(timeout),
    )
    try:
        _populate(ctx, work_root, body_limit, download_from_cfg, trace_header, trace)
    except BaseException:
        ctx.cancel()
        raise
    return ctx


def _populate(
    ctx: Context,
    work_root: str,
    body_limit: int,
    cfg: DownloadFromConfig,
    trace_header: str,
    trace: str,
) -> None:
    assert ctx.exchange is not None and ctx.exchange.request is not None
    values, uploads = _parse_multipart(ctx.exchange.request)

    budget = _BodyBudget(body_limit)
    budget.add(
        sum(
            len(key.encode()) + sum(len(value.encode()) for value in items)
            for key, items in values.items()
        )
    )

    dir_path = os.path.join(work_root, str(uuid.uuid4()))
    os.makedirs(dir_path, mode=0o755)
    ctx.dir_path = dir_path
    ctx.values = values
    ctx.files = {}

    raw = values.get("downloadFrom")
    if not cfg.disable and raw is not None:
        entries = _parse_download_from(raw[0] if raw else "")
        _download_all(ctx, entries, cfg, budget, trace_header, trace)

    for _, storage in uploads:
        filename = _safe_name(storage.filename or "")
        path = f"{ctx.dir_path}/{filename}"
        _copy(storage.stream, path, budget)
        ctx.files[filename] = path

    ctx.logger.debug("form fields: %s", ctx.values)
    ctx.logger.debug("form files: %s", ctx.files)
    ctx.logger.debug("total bytes: %d", budget.total)


def _parse_multipart(request: Request) -> tuple[dict[str, list[str]], list[tuple[str, Any]]]:
    if request.mimetype != "multipart/form-data":
        raise wrap_error(
            ValueError("get multipart form: request Content-Type isn't multipart/form-data"),
            SentinelHttpError(
                415, "Invalid 'Content-Type' header value: want 'multipart/form-data'"
            ),
        )
    if not request.mimetype_params.get("boundary"):
        raise wrap_error(
            ValueError("get multipart form: no multipart boundary param in Content-Type"),
            SentinelHttpError(415, "Invalid 'Content-Type' header value: no boundary"),
        )

    data = request.get_data(cache=True)
    parser = FormDataParser(silent=False)
    try:
        _, form, files = parser.parse(
            BytesIO(data), request.mimetype, len(data), dict(request.mimetype_params)
        )
    except ValueError as err:
        raise wrap_error(
            ValueError(f"get multipart form: {err}"),
            SentinelHttpError(
                400, "Malformed body: it does not match the 'Content-Type' header boundaries"
            ),
        ) from err
    return form.to_dict(flat=False), list(files.items(multi=True))


def _parse_download_from(raw: str) -> list[_DownloadEntry]:
    try:
        data = json.loads(raw)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ValueError(f"cannot unmarshal {type(data).__name__} into a list of entries")
        entries = []
        for item in data:
            if item is None:
                entries.append(_DownloadEntry("", {}))
                continue
            if not isinstance(item, dict):
                raise ValueError(f"cannot unmarshal {type(item).__name__} into an entry")
            url = item.get("url")
            if url is None:
                url = ""
            if not isinstance(url, str):
                raise ValueError("cannot unmarshal url into a string")
            headers = item.get("extraHttpHeaders") or {}
            if not isinstance(headers, dict) or not all(
                isinstance(value, str) for value in headers.values()
            ):
                raise ValueError("cannot unmarshal extraHttpHeaders into a string map")
            entries.append(_DownloadEntry(url, dict(headers)))
        return entries
    except ValueError as err:
        raise wrap_error(
            ValueError(f"unmarshal json: {err}"),
            SentinelHttpError(400, f"Invalid 'downloadFrom' form field value: {err}"),
        ) from err


def _download_all(
    ctx: Context,
    entries: list[_DownloadEntry],
    cfg: DownloadFromConfig,
    budget: _BodyBudget,
    trace_header: str,
    trace: str,
) -> None:
    if not entries:
        return
    with ThreadPoolExecutor(max_workers=len(entries)) as pool:
        futures = [
            pool.submit(_download_one, ctx, index, entry, cfg, budget, trace_header, trace)
            for index, entry in enumerate(entries)
        ]
    first_error: BaseException | None = None
    for future in futures:
        error = future.exception()
        if error is not None:
            first_error = first_error or error
            continue
        filename, path = future.result()
        ctx.files[filename] = path
    if first_error is not None:
        raise first_error


def _download_one(
    ctx: Context,
    index: int,
    entry: _DownloadEntry,
    cfg: DownloadFromConfig,
    budget: _BodyBudget,
    trace_header: str,
    trace: str,
) -> tuple[str, str]:
    if ctx.deadline is None:
        raise RuntimeError("context has no deadline")
    url = entry.url
    if not url.strip():
        raise wrap_error(
            ValueError("empty download from URL"),
            SentinelHttpError(
                400, f"Invalid 'downloadFrom' form field entry {index}: URL must be set"
            ),
        )
    _filter_url(cfg, url, ctx.deadline)
    ctx.logger.debug("download file from '%s'", url)

    request = UrlRequest(url, method="GET")
    request.add_header("User-Agent", _USER_AGENT)
    for key, value in entry.extra_http_headers.items():
        request.add_header(key, value)
    request.add_header(trace_header, trace)

    try:
        response = _fetch(request, url, ctx.deadline, cfg.max_retry)
    except (OSError, _GiveUpError) as err:
        raise wrap_error(
            ValueError(f"download file from to '{url}': {err}"),
            SentinelHttpError(400, f"Unable to download file from '{url}': {err}"),
        ) from err

    with response:
        status = response.getcode()
        if status != 200:
            reason = f"{status} {response.reason}"
            raise wrap_error(
                ValueError(f"download file from to '{url}': got status: '{reason}'"),
                SentinelHttpError(
                    400, f"Unable to download file from '{url}': got status: '{reason}'"
                ),
            )
        disposition = response.headers.get("Content-Disposition", "")
        if not disposition:
            raise wrap_error(
                ValueError(f"no 'Content-Disposition' header from '{url}'"),
                SentinelHttpError(400, f"No 'Content-Disposition' header from '{url}'"),
            )
        filename = _safe_name(_disposition_filename(disposition, url))
        path = f"{ctx.dir_path}/{filename}"
        _copy(response, path, budget)
    return filename, path


class _GiveUpError(Exception):
    pass


def _fetch(request: UrlRequest, url: str, deadline: float, max_retry: int) -> Any:
    """Send a GET, retrying connection errors, 429 and 5xx (but 501) with an
    exponential backoff bounded by the deadline."""
    attempt = 0
    while True:
        attempt += 1
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("context deadline exceeded")
        failure: BaseException | None = None
        response: Any = None
        try:
            response = urlopen(request, timeout=remaining)
        except HTTPError as err:
            response = err
        except (URLError, OSError) as err:
            failure = err

        if response is not None:
            status = response.getcode()
            if not (status == 429 or (status >= 500 and status != 501)):
                return response
            response.close()

        if attempt > max_retry:
            detail = f": {failure}" if failure is not None else ""
            raise _GiveUpError(f"GET {url} giving up after {attempt} attempt(s){detail}")

        wait = min(2.0 ** (attempt - 1), max(0.0, deadline - time.monotonic()))
        time.sleep(wait)


def _disposition_filename(value: str, url: str) -> str:
    media = value.split(";", 1)[0].strip()
    problem = None
    if not media:
        problem = "mime: no media type"
    elif not _TOKEN_RE.fullmatch(media):
        problem = "mime: expected token after slash"
    if problem is not None:
        raise wrap_error(
            ValueError(
                f"parse 'Content-Disposition' header '{value}' from '{url}': {problem}"
            ),
            SentinelHttpError(
                400, f"Invalid 'Content-Disposition' header '{value}' from '{url}': {problem}"
            ),
        )
    message = Message()
    message["Content-Disposition"] = value
    filename = message.get_filename()
    if filename is None:
        raise wrap_error(
            ValueError(
                f"get filename from 'Content-Disposition' header '{value}' from '{url}'"
            ),
            SentinelHttpError(
                400,
                f"Invalid 'Content-Disposition' header '{value}' from '{url}': no filename",
            ),
        )
    return filename


def _filter_url(cfg: DownloadFromConfig, url: str, deadline: float) -> None:
    if time.monotonic() >= deadline:
        raise TimeoutError("context deadline exceeded")
    if cfg.allow_list is not None and cfg.allow_list.pattern and not cfg.allow_list.search(url):
        raise FilteredError(f"'{url}' does not match the expression from the allowed list")
    if cfg.deny_list is not None and cfg.deny_list.pattern and cfg.deny_list.search(url):
        raise FilteredError(f"'{url}' matches the expression from the denied list")


def _copy(source: BinaryIO, path: str, budget: _BodyBudget) -> None:
    with open(path, "wb") as out:
        while chunk := source.read(_CHUNK_SIZE):
            budget.add(len(chunk))
            out.write(chunk)


def _safe_name(name: str) -> str:
    """Keep only the last path element (no directory traversal), in NFC."""
    return unicodedata.normalize("NFC", _base(name))


def _base(path: str) -> str:
    if path == "":
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _ext(path: str) -> str:
    base = path.rsplit("/", 1)[-1]
    index = base.rfind(".")
    return base[index:] if index >= 0 else ""


def _seconds(timeout: float | timedelta) -> float:
    if isinstance(timeout, timedelta):
        return timeout.total_seconds()
    return float(timeout)