"""Tests for the helper library exposed to node code."""

import base64
import json
from datetime import UTC, datetime

import httpx
import pytest

from nodeflow.helpers import (
    RuntimeServices,
    build_client_helpers,
    build_node_helpers,
    data,
    dates,
    format_log_args,
    strings,
)
from nodeflow.helpers.debug import DebugRecorder
from nodeflow.helpers.http import HttpHelper, build_query_string, parse_query_string
from nodeflow.helpers.secrets import SecretsManager
from nodeflow.helpers.validation import SchemaValidator, coerce_value


# =============================================================================
# helpers.data
# =============================================================================


class TestDataHelpers:
    """Tests for collection utilities."""

    def test_map_filter_reduce_pass_index(self):
        """Test that callbacks receive the item index."""
        assert data.map([1, 2], lambda x, i: x * 10 + i) == [10, 21]
        assert data.filter([5, 6, 7], lambda x, i: i != 1) == [5, 7]
        assert data.reduce([1, 2, 3], lambda acc, x, i: acc + x, 0) == 6

    def test_non_list_rejected(self):
        """Test the array argument check."""
        with pytest.raises(TypeError, match="map\\(\\) requires an array"):
            data.map("abc", lambda x, i: x)

    def test_group_by_path(self):
        """Test grouping by a dotted key path."""
        rows = [{"u": {"team": "a"}}, {"u": {"team": "b"}}, {"u": {"team": "a"}}]
        groups = data.group_by(rows, "u.team")

        assert list(groups) == ["a", "b"]
        assert len(groups["a"]) == 2

    def test_sort_by(self):
        """Test stable sorting with None first and descending order."""
        rows = [{"n": 2}, {"n": None}, {"n": 1}, {"n": 2, "second": True}]

        ascending = data.sort_by(rows, "n")
        assert [r["n"] for r in ascending] == [None, 1, 2, 2]
        assert ascending[3].get("second") is True
        assert [r["n"] for r in data.sort_by(rows, "n", "desc")][0] == 2

    def test_unique_and_flatten(self):
        """Test de-duplication and flattening depth."""
        assert data.unique([1, 2, 1, 3]) == [1, 2, 3]
        assert data.unique([{"id": 1}, {"id": 1, "x": 2}], "id") == [{"id": 1}]
        assert data.flatten([1, [2, [3]]]) == [1, 2, [3]]
        assert data.flatten([1, [2, [3]]], depth=2) == [1, 2, 3]

    def test_pick_omit_merge(self):
        """Test object helpers."""
        obj = {"a": 1, "b": 2, "c": 3}
        assert data.pick(obj, ["a", "z"]) == {"a": 1}
        assert data.omit(obj, ["a"]) == {"b": 2, "c": 3}
        assert data.merge({"x": {"y": 1, "z": 1}}, {"x": {"z": 2}}) == {"x": {"y": 1, "z": 2}}

    def test_get_set_paths(self):
        """Test dotted path reads and writes."""
        obj = {"a": {"list": [{"v": 1}]}}
        assert data.get(obj, "a.list.0.v") == 1
        assert data.get(obj, "a.list.5.v", "none") == "none"
        assert data.set({}, "x.y.z", 3) == {"x": {"y": {"z": 3}}}

    def test_flatten_object(self):
        """Test dotted key flattening."""
        assert data.flatten_object({"a": {"b": 1, "c": [1]}, "d": {}}) == {"a.b": 1, "a.c": [1], "d": {}}

    def test_clone_is_deep(self):
        """Test that clone copies nested values."""
        original = {"a": [1]}
        copied = data.clone(original)
        copied["a"].append(2)
        assert original == {"a": [1]}


# =============================================================================
# helpers.strings
# =============================================================================


class TestStringHelpers:
    """Tests for string utilities."""

    @pytest.mark.parametrize(
        "fn,text,expected",
        [
            (strings.slugify, "Hello, World!  Again", "hello-world-again"),
            (strings.capitalize, "hELLO", "Hello"),
            (strings.title_case, "hello big world", "Hello Big World"),
            (strings.camel_case, "user first name", "userFirstName"),
            (strings.snake_case, "userFirstName", "user_first_name"),
            (strings.kebab_case, "userFirstName", "user-first-name"),
            (strings.reverse, "abc", "cba"),
            (strings.normalize_whitespace, "  a \n b  ", "a b"),
            (strings.strip_html, "<b>bold</b> text", "bold text"),
        ],
    )
    def test_transforms(self, fn, text, expected):
        """Test single-argument string transforms."""
        assert fn(text) == expected

    def test_truncate(self):
        """Test truncation including the suffix length."""
        assert strings.truncate("abcdefghij", 6) == "abc..."
        assert strings.truncate("short", 10) == "short"

    def test_template(self):
        """Test {{key}} filling with unknown keys kept."""
        assert strings.template("Hi {{user.name}} {{missing}}", {"user": {"name": "Ana"}}) == "Hi Ana {{missing}}"

    def test_escape_html(self):
        """Test HTML escaping of quotes."""
        assert strings.escape_html("<a href='x'>&</a>") == "&lt;a href=&#039;x&#039;&gt;&amp;&lt;/a&gt;"

    def test_pad(self):
        """Test padding positions."""
        assert strings.pad("7", 3, "0", "start") == "007"
        assert strings.pad("ab", 4, "*", "both") == "*ab*"

    def test_extractors(self):
        """Test email and URL extraction."""
        text = "Mail ana@example.com or see https://example.com/docs now"
        assert strings.extract_emails(text) == ["ana@example.com"]
        assert strings.extract_urls(text) == ["https://example.com/docs"]
        assert strings.word_count(text) == 6

    def test_random(self):
        """Test random string length and charset."""
        value = strings.random(12, "numeric")
        assert len(value) == 12
        assert value.isdigit()

    def test_type_check(self):
        """Test that non-strings are rejected."""
        with pytest.raises(TypeError):
            strings.slugify(5)


# =============================================================================
# helpers.dates
# =============================================================================


class TestDateHelpers:
    """Tests for date utilities."""

    def test_to_datetime_inputs(self):
        """Test ISO strings, epoch seconds and naive datetimes."""
        assert dates.to_datetime("2024-03-01T10:00:00") == datetime(2024, 3, 1, 10, tzinfo=UTC)
        assert dates.to_datetime(0) == datetime(1970, 1, 1, tzinfo=UTC)
        assert dates.to_datetime(datetime(2024, 1, 1)).tzinfo is UTC

    def test_invalid_date(self):
        """Test that unparsable values raise ValueError."""
        with pytest.raises(ValueError, match="Unable to parse date"):
            dates.to_datetime("not a date")

    def test_format_date(self):
        """Test format tokens."""
        d = datetime(2024, 3, 5, 7, 8, 9, 123000, tzinfo=UTC)
        assert dates.format_date(d, "YYYY-MM-DD HH:mm:ss.SSS") == "2024-03-05 07:08:09.123"
        assert dates.format_date(d, "DD/MM/YY") == "05/03/24"

    def test_arithmetic_and_diffs(self):
        """Test adding time and rounded-up differences."""
        start = dates.create(2024, 1, 1)
        assert dates.add_days(start, 2) == dates.create(2024, 1, 3)
        assert dates.diff_days(start, dates.add_hours(start, 25)) == 2
        assert dates.diff_minutes(dates.add_seconds(start, 61), start) == 2

    def test_calendar_helpers(self):
        """Test month and weekday helpers."""
        feb = dates.create(2024, 2, 10)
        assert dates.get_days_in_month(feb) == 29
        assert dates.end_of_month(feb).day == 29
        assert dates.start_of_month(feb).day == 1
        assert dates.get_day_of_week(dates.create(2024, 2, 11)) == 0
        assert dates.get_day_name(feb, short=True) == "Sat"
        assert dates.get_month_name(feb) == "February"
        assert dates.is_leap_year(2024)

    def test_time_ago(self):
        """Test relative descriptions."""
        ref = dates.create(2024, 1, 10)
        assert dates.time_ago(dates.add_seconds(ref, -30), ref) == "just now"
        assert dates.time_ago(dates.add_hours(ref, -1), ref) == "1 hour ago"
        assert dates.time_ago(dates.subtract_days(ref, 3), ref) == "3 days ago"

    def test_timestamps(self):
        """Test epoch seconds conversions."""
        d = dates.create(2024, 1, 1)
        assert dates.from_timestamp(dates.get_timestamp(d)) == d
        assert dates.to_iso_string(d) == "2024-01-01T00:00:00+00:00"


# =============================================================================
# helpers.validation
# =============================================================================


class TestSchemaValidator:
    """Tests for JSON Schema validation."""

    SCHEMA = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "required": True},
            "age": {"type": "number", "minimum": 0},
        },
    }

    def test_valid(self):
        """Test a passing document."""
        result = SchemaValidator.validate({"name": "Ana", "age": 3}, self.SCHEMA)
        assert result["valid"]
        assert result["errors"] == []

    def test_required_flag_is_folded(self):
        """Test that property-level required flags are enforced."""
        result = SchemaValidator.validate({"age": 3}, self.SCHEMA)

        assert not result["valid"]
        assert result["errors"][0]["path"] == "name"

    def test_type_error_details(self):
        """Test path, value and expected on a type error."""
        result = SchemaValidator.validate({"name": "Ana", "age": "old"}, self.SCHEMA)
        error = result["errors"][0]

        assert error["path"] == "age"
        assert error["value"] == "old"
        assert error["expected"] == "number"

    def test_validate_and_format(self):
        """Test the bullet-formatted error message."""
        result = SchemaValidator.validate_and_format({"age": -1}, self.SCHEMA)

        assert not result["valid"]
        assert "• name:" in result["error_message"]
        assert "• age:" in result["error_message"]

    def test_defaults_and_coercion(self):
        """Test filling defaults and coercing values."""
        schema = {"properties": {"n": {"type": "integer"}, "flag": {"type": "boolean", "default": False}}}

        assert SchemaValidator.apply_defaults({}, schema) == {"flag": False}
        assert SchemaValidator.coerce({"n": "42", "flag": "true"}, schema) == {"n": 42, "flag": True}

    @pytest.mark.parametrize(
        "value,schema,expected",
        [
            (True, {"type": "string"}, "true"),
            ("1.5", {"type": "number"}, 1.5),
            ("abc", {"type": "number"}, "abc"),
            ("x", {"type": "array"}, ["x"]),
            ("x", {"type": "object"}, {}),
            (None, {"type": "string"}, None),
        ],
    )
    def test_coerce_value(self, value, schema, expected):
        """Test single value coercion."""
        assert coerce_value(value, schema) == expected

    def test_builders(self):
        """Test schema builders produce usable schemas."""
        schema = SchemaValidator.create_schema(
            {"email": SchemaValidator.email(), "tags": SchemaValidator.array(SchemaValidator.string())}
        )

        assert SchemaValidator.validate({"email": "a@b.co", "tags": ["x"]}, schema)["valid"]
        assert not SchemaValidator.validate({"email": "nope"}, schema)["valid"]


# =============================================================================
# helpers.secrets
# =============================================================================


class TestSecretsManager:
    """Tests for secrets and environment values."""

    def test_plain_and_encrypted_secrets(self):
        """Test that encrypted secrets read back as plain text."""
        manager = SecretsManager(encryption_key="k3y")
        manager.set_secret("API_KEY", "abc123", encrypt=True)

        assert manager.get_secret("API_KEY") == "abc123"
        assert manager.export_secrets()["API_KEY"]["value"] != "abc123"
        assert manager.get_secret_metadata("API_KEY")["encrypted"] is True
        assert "value" not in manager.get_secret_metadata("API_KEY")

    def test_missing_secret(self):
        """Test reading an unknown secret."""
        assert SecretsManager().get_secret("NOPE") is None

    def test_resolve_references(self):
        """Test ${NAME} and ${env:NAME} substitution."""
        manager = SecretsManager(env={"REGION": "eu"})
        manager.set_secret("TOKEN", "t0k")

        assert manager.resolve("Bearer ${TOKEN} in ${env:REGION} ${UNKNOWN}") == "Bearer t0k in eu ${UNKNOWN}"
        assert manager.resolve_object({"h": ["${TOKEN}"], "n": 1}) == {"h": ["t0k"], "n": 1}

    def test_environment_isolation(self, monkeypatch):
        """Test that the process environment is only visible when inherited."""
        monkeypatch.setenv("NODEFLOW_PROBE", "1")

        assert SecretsManager().get_env("NODEFLOW_PROBE") is None
        assert SecretsManager(inherit_environment=True).get_env("NODEFLOW_PROBE") == "1"

    def test_static_helpers(self):
        """Test masking, key validation and reference extraction."""
        assert SecretsManager.mask_secret("abcdefgh") == "ab****gh"
        assert SecretsManager.mask_secret("abc") == "***"
        assert SecretsManager.is_valid_key("API_KEY_2")
        assert not SecretsManager.is_valid_key("api-key")
        assert SecretsManager.extract_secret_references("${A} and ${env:B}") == ["A", "env:B"]


# =============================================================================
# helpers.http
# =============================================================================


class TestQueryStrings:
    """Tests for query string helpers."""

    def test_build(self):
        """Test that None is dropped and lists repeat the key."""
        assert build_query_string({"a": 1, "b": None, "c": ["x", "y"]}) == "a=1&c=x&c=y"

    def test_parse(self):
        """Test that repeated keys become lists."""
        assert parse_query_string("?a=1&c=x&c=y") == {"a": "1", "c": ["x", "y"]}


class TestHttpHelper:
    """Tests for HttpHelper over a mock transport."""

    @pytest.mark.asyncio
    async def test_json_request_and_bearer_auth(self):
        """Test JSON body encoding and bearer auth header."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": 7})

        http = HttpHelper(transport=httpx.MockTransport(handler))
        response = await http.post("https://api.test/items", {"name": "x"}, auth={"type": "bearer", "token": "abc"})
        await http.aclose()

        assert response["status"] == 201
        assert response["ok"]
        assert response["data"] == {"id": 7}
        assert seen == {"auth": "Bearer abc", "body": {"name": "x"}}

    @pytest.mark.asyncio
    async def test_basic_auth(self):
        """Test the Basic authorization header."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, text="ok")

        http = HttpHelper(transport=httpx.MockTransport(handler))
        response = await http.get("https://api.test/", auth={"type": "basic", "username": "u", "password": "p"})
        await http.aclose()

        assert seen["auth"] == "Basic " + base64.b64encode(b"u:p").decode()
        assert response["data"] == "ok"

    @pytest.mark.asyncio
    async def test_retry_on_server_error(self):
        """Test that retryable statuses are retried."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"ok": True})

        http = HttpHelper(transport=httpx.MockTransport(handler))
        response = await http.get("https://api.test/", retry={"max_retries": 3, "delay": 0.001})
        await http.aclose()

        assert response["status"] == 200
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_last_retry_returns_failed_response(self):
        """Test that the final failed response is returned once retries are used up."""
        http = HttpHelper(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        response = await http.get("https://api.test/", retry={"max_retries": 1, "delay": 0.001})
        await http.aclose()

        assert response["status"] == 500
        assert not response["ok"]

    @pytest.mark.asyncio
    async def test_page_pagination(self):
        """Test page-number pagination stops on a short page."""
        pages = {"1": [1, 2], "2": [3]}

        def handler(request: httpx.Request) -> httpx.Response:
            page = request.url.params["page"]
            return httpx.Response(200, json={"data": pages[page]})

        http = HttpHelper(transport=httpx.MockTransport(handler))
        results = await http.paginate("https://api.test/items", type="page", page_size=2)
        await http.aclose()

        assert results == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_cursor_pagination(self):
        """Test cursor pagination follows next_cursor."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("cursor") == "c2":
                return httpx.Response(200, json={"data": ["b"], "next_cursor": None})
            return httpx.Response(200, json={"data": ["a"], "next_cursor": "c2"})

        http = HttpHelper(transport=httpx.MockTransport(handler))
        results = await http.paginate("https://api.test/items", type="cursor", page_size=1)
        await http.aclose()

        assert results == ["a", "b"]

    @pytest.mark.asyncio
    async def test_link_pagination(self):
        """Test Link header pagination."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/items":
                return httpx.Response(
                    200, json={"data": [1]}, headers={"Link": '<https://api.test/items2>; rel="next"'}
                )
            return httpx.Response(200, json={"data": [2]})

        http = HttpHelper(transport=httpx.MockTransport(handler))
        results = await http.paginate("https://api.test/items", type="link")
        await http.aclose()

        assert results == [1, 2]

    @pytest.mark.asyncio
    async def test_pagination_failure(self):
        """Test that a failing page raises with its page number."""
        http = HttpHelper(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        with pytest.raises(RuntimeError, match="Pagination failed at page 1"):
            await http.paginate("https://api.test/items")
        await http.aclose()


# =============================================================================
# helpers.debug
# =============================================================================


class TestDebugRecorder:
    """Tests for the per-run debug recorder."""

    def test_timers(self):
        """Test timer durations."""
        debug = DebugRecorder()
        debug.start_timer("t")
        assert debug.end_timer("t") >= 0
        assert debug.end_timer("unknown") == 0

    def test_metrics(self):
        """Test metric recording and averages."""
        debug = DebugRecorder()
        debug.record_metric("latency", 10)
        debug.record_metric("latency", 20)
        debug.increment_metric("calls")

        assert debug.get_metric_average("latency") == 15
        assert len(debug.get_metrics_by_name("calls")) == 1

    def test_breadcrumbs_are_bounded(self):
        """Test that only the newest breadcrumbs are kept."""
        debug = DebugRecorder(max_breadcrumbs=2)
        for i in range(3):
            debug.add_breadcrumb(f"step {i}", "warn" if i == 2 else "info")

        assert [b["message"] for b in debug.get_breadcrumbs()] == ["step 1", "step 2"]
        assert len(debug.get_breadcrumbs_by_level("warn")) == 1

    def test_assert(self):
        """Test assert_ raising and recording a breadcrumb."""
        debug = DebugRecorder()
        with pytest.raises(AssertionError, match="Assertion failed: must hold"):
            debug.assert_(False, "must hold")
        assert debug.get_breadcrumbs()[-1]["level"] == "error"

    def test_report(self):
        """Test the report sections."""
        debug = DebugRecorder()
        debug.set_context("user", "ana")
        report = debug.generate_debug_report()

        assert report["context"] == {"user": "ana"}
        assert set(report) >= {"timers", "metrics", "breadcrumbs", "memory"}

    @pytest.mark.asyncio
    async def test_measure_time(self):
        """Test measuring an async callable."""

        async def work():
            return "done"

        result = await DebugRecorder().measure_time("work", work)
        assert result["result"] == "done"


# =============================================================================
# helpers namespace
# =============================================================================


class TestHelperNamespace:
    """Tests for build_node_helpers / build_client_helpers."""

    def test_format_log_args(self):
        """Test that strings stay raw and other values become JSON."""
        assert format_log_args(("a", 1, {"b": True}, None)) == 'a 1 {"b": true} null'

    def test_log_sink(self):
        """Test that helpers.warn reaches the log sink."""
        logged = []
        helpers = build_node_helpers(RuntimeServices(), lambda level, message, args: logged.append((level, message)))

        helpers.warn("low disk", 5)

        assert logged == [("warn", "low disk 5")]

    def test_log_helpers_leave_breadcrumbs(self):
        """Test that each log call records a breadcrumb at the matching level."""
        runtime = RuntimeServices()
        helpers = build_node_helpers(runtime)

        helpers.log("started")
        helpers.warn("low disk", 5)
        helpers.error("failed")

        crumbs = runtime.debug.get_breadcrumbs()
        assert [(c["message"], c["level"]) for c in crumbs] == [
            ("started", "info"),
            ("low disk 5", "warn"),
            ("failed", "error"),
        ]
        assert crumbs[1]["data"] == {"source": "warn", "args": [5]}
        assert crumbs[0]["data"] == {"source": "log"}

    def test_quick_aliases(self):
        """Test the flat shortcuts to data, string, date and json helpers."""
        runtime = RuntimeServices()
        helpers = build_node_helpers(runtime)

        assert helpers.chunk([1, 2, 3], 2) == [[1, 2], [3]]
        assert helpers.pick({"a": 1, "b": 2}, ["a"]) == {"a": 1}
        assert helpers.get({"a": {"b": 3}}, "a.b") == 3
        assert helpers.unique([1, 1, 2]) == [1, 2]
        assert helpers.slugify("Hello World") == "hello-world"
        assert helpers.snake_case("helloWorld") == "hello_world"
        assert helpers.template("Hi {{name}}", {"name": "Ana"}) == "Hi Ana"
        assert helpers.format_date(datetime(2024, 1, 2, tzinfo=UTC)) == "2024-01-02"
        assert helpers.parse('{"x": 1}') == {"x": 1}
        assert helpers.http_get == runtime.http.get
        assert helpers.http_request == runtime.http.request
        assert helpers.map is data.map

    def test_module_namespaces_expose_public_functions(self):
        """Test that helper namespaces exclude private names."""
        helpers = build_node_helpers(RuntimeServices())

        assert helpers.data.chunk([1, 2, 3], 2) == [[1, 2], [3]]
        assert not hasattr(helpers.data, "_require_list")
        assert helpers.strings.slugify("A B") == "a-b"

    def test_runtime_services_create(self):
        """Test environment and secrets wiring."""
        runtime = RuntimeServices.create(env={"STAGE": "dev"}, secrets={"KEY": "v"})
        helpers = build_node_helpers(runtime)

        assert helpers.get_env("STAGE") == "dev"
        assert helpers.get_secret("KEY") == "v"

    @pytest.mark.asyncio
    async def test_execute_from_node_unavailable(self):
        """Test the error when no engine is attached."""
        helpers = build_node_helpers(RuntimeServices())
        with pytest.raises(RuntimeError, match="not available"):
            await helpers.execute_from_node("n1")

    def test_client_helpers_callbacks(self):
        """Test alert/toast delegation."""
        alerts = []
        helpers = build_client_helpers(RuntimeServices(), alert=alerts.append)

        helpers.alert("hi")
        helpers.toast("Saved", "ok")

        assert alerts == ["hi"]
