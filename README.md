# formserve

`formserve` holds the request-side core of a service that takes
`multipart/form-data` uploads: it parses such a request into a per-request
working directory, binds form fields and files to typed values, and turns
errors into an HTTP status and a message that is safe to send to the client.

It has three modules: `formserve.errors`, `formserve.formdata` and
`formserve.context`.

## Errors for HTTP responses

```python
from formserve.errors import SentinelHttpError, wrap_error

def check(value):
    if value < 0:
        raise wrap_error(
            ValueError(f"negative value {value}"),
            SentinelHttpError(400, "Value must be positive"),
        )
```

- `SentinelHttpError(status, message)` is an exception whose
  `http_error()` returns `(status, message)`. Two sentinels are equal when
  their status and message are.
- `wrap_error(err, sentinel)` returns a `WrappedError`. Its `str()` is the
  internal error (meant for logs); its `http_error()` is the sentinel's
  `(status, message)` (meant for the response). `matches(sentinel)` tells
  whether a given sentinel is the one it carries.

## Binding form data

`FormData(values=..., files=...)` takes the form fields (`dict[str,
list[str]]`, only the first value of each is read) and the uploaded files
(`dict[filename, path]`). Each accessor returns a value; problems are
recorded in `form.errors`, and `validate()` raises them all at once as a
`WrappedError` with a 400 `"Invalid form data: ..."` sentinel.

```python
from datetime import timedelta

form = ctx.form_data()
landscape = form.boolean("landscape", False)
scale = form.float("scale", 1.0)
margin = form.inches("marginTop", 0.39)
wait = form.duration("waitDelay", timedelta(0))
documents = form.mandatory_paths([".html", ".md"])
form.validate()
```

- Plain accessors fall back to their default when the field is missing or
  empty; `mandatory_*` accessors record a "form field '...' is required"
  error instead. An unparsable value records an error and yields a zero
  value.
- `string`, `boolean`, `integer`, `float`, `duration`, `inches` and their
  `mandatory_` forms.
- `parse_bool` accepts `1 t T TRUE true True` and `0 f F FALSE false False`.
- `parse_duration` reads values such as `"300ms"`, `"1.5h"` or `"2h45m"`
  (units `ns`, `us`/`µs`, `ms`, `s`, `m`, `h`) into a `timedelta`;
  precision below a microsecond is truncated.
- `inches` converts `pt`, `px`, `in`, `mm`, `cm` and `pc`: `"72pt"`,
  `"96px"`, `"1in"`, `"25.4mm"`, `"2.54cm"` and `"6pc"` are all one inch. A
  value without a unit is taken as inches.
- `custom(key, assign)` passes the raw value (`""` when absent) to `assign`
  and returns its result; `mandatory_custom` requires a non-empty value.
  `assign` reports a bad value by raising `ValueError` or `TypeError`.
- `path(filename)` and `content(filename, default)` find an uploaded file by
  name, also matching when only the case of its extension differs;
  `mandatory_path` and `mandatory_content` record an error when it is
  missing, and an unreadable file records an error too.
- `paths(extensions)` returns the paths of files whose lower-cased extension
  is listed, sorted in natural alphanumeric order; `mandatory_paths` records
  an error when none is found.

## The request context

`new_context(exchange, logger, work_root, timeout, body_limit,
download_from_cfg, trace_header, trace)` parses the request held by an
`Exchange` (a werkzeug `Request` plus per-request `locals`) and returns a
`Context`:

- a request that is not `multipart/form-data`, or has no boundary, raises
  with a 415 sentinel; a malformed body raises with a 400 sentinel;
- a new directory named by a UUID is created under `work_root`, and every
  uploaded file is stored there under its base name, NFC-normalised;
- the bytes of field names, field values and files are counted against
  `body_limit` (0 means no limit); going over raises with a 413 sentinel;
- unless `DownloadFromConfig.disable` is set, a `downloadFrom` field holding
  a JSON list of `{"url": ..., "extraHttpHeaders": {...}}` has each URL
  fetched concurrently. URLs are checked against the `allow_list` and
  `deny_list` patterns (`FilteredError` when rejected); connection errors,
  429 and 5xx answers other than 501 are retried up to `max_retry` times
  with an exponential backoff bounded by the timeout. The answer must be a
  200 with a `Content-Disposition` header naming a file. The trace header
  is sent along with each request.

If anything fails, the working directory is removed before the error
propagates.

```python
import io
import logging
import tempfile

from werkzeug.test import EnvironBuilder
from werkzeug.wrappers import Request

from formserve.context import DownloadFromConfig, Exchange, new_context

builder = EnvironBuilder(
    method="POST",
    data={"scale": "1.5", "index": (io.BytesIO(b"<p>Hi</p>"), "index.html")},
)
exchange = Exchange(request=Request(builder.get_environ()))

with new_context(
    exchange, logging.getLogger("app"), tempfile.gettempdir(),
    30, 0, DownloadFromConfig(), "X-Trace", "trace-1",
) as ctx:
    form = ctx.form_data()
    source = form.mandatory_path("index.html")
    form.validate()
    output = ctx.generate_path(".pdf")
    ...  # write the output file
    ctx.add_output_paths(output)
    result = ctx.build_output_file()
```

`Context` also offers `generate_path_from_filename`, `create_sub_directory`,
`rename`, and `output_filename(output_path)`, which returns the
`outputFilename` stored in the exchange's locals plus the output's extension,
or the output's base name when none is set. `add_output_paths` raises
`OutOfBoundsOutputPathError` for a path outside the working directory and
`ContextAlreadyClosedError` once cancelled. `build_output_file` returns the
single output path, or a zip archive of all of them (directories included),
and raises `ValueError` when there is none. `cancel()`, also called on leaving
a `with` block, removes the working directory.

## What this package does not do

There is no HTTP server, router or middleware chain here, and no command to
run: `formserve` does not listen on a port, route requests, authenticate
users, add trace headers or send responses. It gives an application built on
werkzeug the pieces to parse, bind and answer multipart requests; serving
them is left to that application.