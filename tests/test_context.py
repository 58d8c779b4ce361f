import json
import logging
import os
import re
import threading
import zipfile
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from io import BytesIO

import pytest
from werkzeug.test import EnvironBuilder

from formserve.context import (
    Context,
    ContextAlreadyClosedError,
    DownloadFromConfig,
    Exchange,
    FilteredError,
    OutOfBoundsOutputPathError,
    new_context,
)
from formserve.errors import WrappedError

LOGGER = logging.getLogger("formserve-tests")
TRACE_HEADER = "Request-Trace"


def _exchange(**kwargs):
    builder = EnvironBuilder(method="POST", **kwargs)
    try:
        return Exchange(request=builder.get_request())
    finally:
        builder.close()


def _new(exchange, work_root, body_limit=0, cfg=None):
    return new_context(
        exchange,
        LOGGER,
        str(work_root),
        10,
        body_limit,
        cfg or DownloadFromConfig(max_retry=0),
        TRACE_HEADER,
        "trace-id",
    )


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        self.server.seen_headers.append(dict(self.headers))
        if self.path == "/doc.pdf":
            body = b"%PDF-sample"
            self.send_response(200)
            self.send_header("Content-Disposition", 'attachment; filename="../doc.pdf"')
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
        elif self.path == "/nodisposition":
            self.send_response(200)
            self.send_header("Content-Length", "0")
            self.end_headers()
        else:
            self.send_response(404)
            self.send_header("Content-Length", "0")
            self.end_headers()

    def log_message(self, *args):
        pass


@pytest.fixture
def server():
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    httpd.seen_headers = []
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield httpd
    finally:
        httpd.shutdown()
        httpd.server_close()


def _url(server, path):
    host, port = server.server_address[:2]
    return f"http://{host}:{port}{path}"


def test_new_context_stores_values_and_files(tmp_path):
    exchange = _exchange(data={"foo": "bar", "file": (BytesIO(b"hello"), "doc.txt")})
    ctx = _new(exchange, tmp_path)
    try:
        assert ctx.values == {"foo": ["bar"]}
        assert list(ctx.files) == ["doc.txt"]
        path = ctx.files["doc.txt"]
        assert path.startswith(ctx.dir_path)
        with open(path, "rb") as handle:
            assert handle.read() == b"hello"
        assert os.path.dirname(ctx.dir_path) == str(tmp_path)
    finally:
        ctx.cancel()
    assert not os.path.exists(ctx.dir_path)


def test_new_context_rejects_non_multipart(tmp_path):
    exchange = _exchange(data=b"x", content_type="text/plain")
    with pytest.raises(WrappedError) as info:
        _new(exchange, tmp_path)
    status, message = info.value.http_error()
    assert status == HTTPStatus.UNSUPPORTED_MEDIA_TYPE
    assert message == "Invalid 'Content-Type' header value: want 'multipart/form-data'"
    assert os.listdir(tmp_path) == []


def test_new_context_rejects_missing_boundary(tmp_path):
    exchange = _exchange(data=b"x", content_type="multipart/form-data")
    with pytest.raises(WrappedError) as info:
        _new(exchange, tmp_path)
    assert info.value.http_error() == (
        HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
        "Invalid 'Content-Type' header value: no boundary",
    )


def test_body_limit_on_values(tmp_path):
    exchange = _exchange(data={"foo": "a long value", "file": (BytesIO(b"x"), "a.txt")})
    with pytest.raises(WrappedError) as info:
        _new(exchange, tmp_path, body_limit=5)
    assert info.value.http_error()[0] == HTTPStatus.REQUEST_ENTITY_TOO_LARGE
    assert os.listdir(tmp_path) == []


def test_body_limit_on_files_removes_working_directory(tmp_path):
    exchange = _exchange(data={"file": (BytesIO(b"x" * 500), "big.txt")})
    with pytest.raises(WrappedError) as info:
        _new(exchange, tmp_path, body_limit=100)
    assert info.value.http_error()[0] == HTTPStatus.REQUEST_ENTITY_TOO_LARGE
    assert os.listdir(tmp_path) == []


def test_uploaded_filename_cannot_traverse(tmp_path):
    exchange = _exchange(data={"file": (BytesIO(b"data"), "../../evil.txt")})
    ctx = _new(exchange, tmp_path)
    try:
        assert list(ctx.files) == ["evil.txt"]
        assert ctx.files["evil.txt"] == f"{ctx.dir_path}/evil.txt"
    finally:
        ctx.cancel()


def test_invalid_download_from_json(tmp_path):
    exchange = _exchange(data={"downloadFrom": "not json"})
    with pytest.raises(WrappedError) as info:
        _new(exchange, tmp_path)
    status, message = info.value.http_error()
    assert status == HTTPStatus.BAD_REQUEST
    assert message.startswith("Invalid 'downloadFrom' form field value: ")
    assert os.listdir(tmp_path) == []


def test_download_from_empty_url(tmp_path):
    exchange = _exchange(data={"downloadFrom": json.dumps([{"url": "  "}])})
    with pytest.raises(WrappedError) as info:
        _new(exchange, tmp_path)
    assert info.value.http_error()[1] == (
        "Invalid 'downloadFrom' form field entry 0: URL must be set"
    )


def test_download_from_success(tmp_path, server):
    url = _url(server, "/doc.pdf")
    payload = json.dumps([{"url": url, "extraHttpHeaders": {"X-Extra": "extra"}}])
    ctx = _new(_exchange(data={"downloadFrom": payload}), tmp_path)
    try:
        assert list(ctx.files) == ["doc.pdf"]
        with open(ctx.files["doc.pdf"], "rb") as handle:
            assert handle.read() == b"%PDF-sample"
        headers = server.seen_headers[0]
        assert headers[TRACE_HEADER] == "trace-id"
        assert headers["X-Extra"] == "extra"
    finally:
        ctx.cancel()


def test_download_from_bad_status(tmp_path, server):
    url = _url(server, "/missing")
    payload = json.dumps([{"url": url}])
    with pytest.raises(WrappedError) as info:
        _new(_exchange(data={"downloadFrom": payload}), tmp_path)
    assert info.value.http_error() == (
        HTTPStatus.BAD_REQUEST,
        f"Unable to download file from '{url}': got status: '404 Not Found'",
    )
    assert os.listdir(tmp_path) == []


def test_download_from_without_content_disposition(tmp_path, server):
    url = _url(server, "/nodisposition")
    payload = json.dumps([{"url": url}])
    with pytest.raises(WrappedError) as info:
        _new(_exchange(data={"downloadFrom": payload}), tmp_path)
    assert info.value.http_error()[1] == f"No 'Content-Disposition' header from '{url}'"


def test_download_from_deny_list(tmp_path, server):
    url = _url(server, "/doc.pdf")
    cfg = DownloadFromConfig(deny_list=re.compile(r"doc\.pdf"), max_retry=0)
    payload = json.dumps([{"url": url}])
    with pytest.raises(FilteredError):
        _new(_exchange(data={"downloadFrom": payload}), tmp_path, cfg=cfg)
    assert server.seen_headers == []


def test_download_from_allow_list(tmp_path, server):
    url = _url(server, "/doc.pdf")
    cfg = DownloadFromConfig(allow_list=re.compile(r"^https://"), max_retry=0)
    payload = json.dumps([{"url": url}])
    with pytest.raises(FilteredError):
        _new(_exchange(data={"downloadFrom": payload}), tmp_path, cfg=cfg)


def test_download_from_disabled(tmp_path, server):
    url = _url(server, "/doc.pdf")
    cfg = DownloadFromConfig(disable=True)
    payload = json.dumps([{"url": url}])
    ctx = _new(_exchange(data={"downloadFrom": payload}), tmp_path, cfg=cfg)
    try:
        assert ctx.files == {}
        assert ctx.values["downloadFrom"] == [payload]
        assert server.seen_headers == []
    finally:
        ctx.cancel()


def test_generate_paths(tmp_path):
    ctx = Context(dir_path=str(tmp_path))
    first = ctx.generate_path(".pdf")
    second = ctx.generate_path(".pdf")
    assert first.startswith(f"{tmp_path}/") and first.endswith(".pdf")
    assert first != second
    assert not os.path.exists(first)
    assert ctx.generate_path_from_filename("a.txt") == f"{tmp_path}/a.txt"


def test_create_sub_directory_and_rename(tmp_path):
    ctx = Context(dir_path=str(tmp_path))
    sub = ctx.create_sub_directory("sub")
    assert sub == f"{tmp_path}/sub"
    assert os.path.isdir(sub)
    source = tmp_path / "a.txt"
    source.write_text("content")
    target = f"{sub}/b.txt"
    ctx.rename(str(source), target)
    assert not source.exists()
    with open(target) as handle:
        assert handle.read() == "content"


def test_add_output_paths_bounds_and_closed(tmp_path):
    ctx = Context(dir_path=str(tmp_path))
    ctx.add_output_paths(f"{tmp_path}/a.pdf")
    assert ctx.output_paths == [f"{tmp_path}/a.pdf"]
    with pytest.raises(OutOfBoundsOutputPathError):
        ctx.add_output_paths("/elsewhere/b.pdf")
    ctx.cancelled = True
    with pytest.raises(ContextAlreadyClosedError):
        ctx.add_output_paths(f"{tmp_path}/c.pdf")


def test_build_output_file(tmp_path):
    ctx = Context(dir_path=str(tmp_path))
    with pytest.raises(ValueError, match="no output path"):
        ctx.build_output_file()

    first = tmp_path / "a.pdf"
    second = tmp_path / "b.pdf"
    first.write_bytes(b"one")
    second.write_bytes(b"two")

    ctx.add_output_paths(str(first))
    assert ctx.build_output_file() == str(first)

    ctx.add_output_paths(str(second))
    archive = ctx.build_output_file()
    assert archive.endswith(".zip") and archive.startswith(str(tmp_path))
    with zipfile.ZipFile(archive) as zipped:
        assert sorted(zipped.namelist()) == ["a.pdf", "b.pdf"]
        assert zipped.read("b.pdf") == b"two"

    ctx.cancelled = True
    with pytest.raises(ContextAlreadyClosedError):
        ctx.build_output_file()


def test_output_filename():
    ctx = Context(dir_path="/work", exchange=Exchange(locals={"outputFilename": "report"}))
    assert ctx.output_filename("/work/out.pdf") == "report.pdf"
    ctx.exchange.set("outputFilename", "")
    assert ctx.output_filename("/work/out.pdf") == "out.pdf"


def test_cancel_removes_directory_once(tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    (work / "file.txt").write_text("x")
    ctx = Context(dir_path=str(work))
    assert ctx.done is False
    ctx.cancel()
    assert ctx.cancelled is True
    assert ctx.done is True
    assert not work.exists()
    ctx.cancel()
    assert ctx.cancelled is True


def test_context_manager_cancels(tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    with Context(dir_path=str(work)) as ctx:
        assert work.exists()
    assert ctx.cancelled is True
    assert not work.exists()


def test_form_data_reads_context_values(tmp_path):
    ctx = Context(dir_path=str(tmp_path), values={"foo": ["bar"]}, files={"a.txt": "/a.txt"})
    form = ctx.form_data()
    assert form.mandatory_string("foo") == "bar"
    assert form.path("a.txt") == "/a.txt"
    assert form.errors == []