import pytest
from pydantic import ValidationError

from log_objects import (
    ALL_LOG_OBJECTS,
    ApiLogObject,
    CronLogObject,
    ErrorLogObject,
    GeneralLogObject,
    IntegrationLogObject,
    JobLogObject,
    OrmLogObject,
)


@pytest.mark.parametrize("log_class", ALL_LOG_OBJECTS)
def test_field_map_never_contains_none_or_log_index(log_class):
    log_object = log_class(message="hello")
    fields = log_object.to_field_map()

    assert None not in fields.values()
    assert "log_index" not in fields
    assert fields["level"] == log_object.level


@pytest.mark.parametrize(
    "log_class, index",
    [
        (GeneralLogObject, "general_log"),
        (ApiLogObject, "api_log"),
        (JobLogObject, "job_log"),
        (CronLogObject, "cron_log"),
        (IntegrationLogObject, "integration_log"),
        (OrmLogObject, "orm_log"),
        (ErrorLogObject, "error_log"),
    ],
)
def test_each_category_routes_to_its_index(log_class, index):
    assert log_class(message="m").index() == index


def test_general_carries_message_and_source_location():
    log_object = GeneralLogObject(
        message="user signed in",
        file="app/auth.py",
        line=42,
        class_name="AuthService",
        function="login",
        user_id="7",
        tags=["auth"],
    )
    fields = log_object.to_field_map()

    assert fields["message"] == "user signed in"
    assert fields["file"] == "app/auth.py"
    assert fields["line"] == 42
    assert fields["class"] == "AuthService"
    assert fields["function"] == "login"
    assert fields["user_id"] == "7"
    assert fields["tags"] == ["auth"]


def test_class_alias_is_accepted():
    log_object = GeneralLogObject(**{"message": "m", "class": "Billing"})
    assert log_object.to_field_map()["class"] == "Billing"


def test_other_categories_drop_message_and_source_location():
    log_object = ApiLogObject(message="api_access", file="x.py", line=1, function="f", method="GET", status=200)
    fields = log_object.to_field_map()

    assert "message" not in fields
    assert "file" not in fields
    assert "line" not in fields
    assert "function" not in fields
    assert fields["method"] == "GET"
    assert fields["status"] == 200


def test_api_bodies_and_headers_are_pretty_printed():
    log_object = ApiLogObject(
        message="api_access",
        request_body='{"a":1}',
        response_body="plain text",
        request_headers={"accept": "application/json"},
    )
    fields = log_object.to_field_map()

    assert fields["request_body"] == '{\n  "a": 1\n}'
    assert fields["response_body"] == "plain text"
    assert fields["request_headers"] == '{\n  "accept": "application/json"\n}'
    assert "response_headers" not in fields


def test_empty_body_is_omitted():
    fields = IntegrationLogObject(message="m", request_body="").to_field_map()
    assert "request_body" not in fields


def test_job_status_does_not_collide_with_http_status():
    fields = JobLogObject(message="m", status="success", exit_code=0).to_field_map()

    assert fields["job_status"] == "success"
    assert "status" not in fields
    assert fields["exit_code"] == 0


def test_cron_is_a_job_with_its_own_index():
    log_object = CronLogObject(message="nightly", command="reports:build", frequency="0 3 * * *")

    assert isinstance(log_object, JobLogObject)
    assert log_object.to_field_map()["frequency"] == "0 3 * * *"


def test_level_is_normalized_and_validated():
    assert GeneralLogObject(message="m", level="WARN").level == "warning"
    assert GeneralLogObject(message="m", level="Critical").level == "critical"

    with pytest.raises(ValidationError):
        GeneralLogObject(message="m", level="loud")


def test_orm_fields():
    fields = OrmLogObject(
        message="database_query",
        model="User",
        action="update",
        is_slow_query=False,
        previous_value={"name": "a"},
        after_value={"name": "b"},
    ).to_field_map()

    assert fields["model"] == "User"
    assert fields["is_slow_query"] is False
    assert fields["after_value"] == {"name": "b"}


def test_error_from_exception_captures_origin_and_cause():
    try:
        try:
            raise KeyError("missing")
        except KeyError as inner:
            raise RuntimeError("boom") from inner
    except RuntimeError as exc:
        error = ErrorLogObject.from_exception(exc, route="orders.show", method="GET")

    fields = error.to_field_map()

    assert error.message == "boom"
    assert error.level == "error"
    assert error.file is None and error.line is None
    assert fields["exception_class"] == "RuntimeError"
    assert fields["previous_exception"]["class"] == "KeyError"
    assert "RuntimeError: boom" in fields["stack_trace"]
    assert fields["context_route"] == "orders.show"
    assert fields["context_method"] == "GET"
    assert "file" not in fields


def test_error_from_exception_accepts_overrides():
    error = ErrorLogObject.from_exception(ValueError("bad"), message="import failed", level="critical")

    assert error.message == "import failed"
    assert error.level == "critical"
    assert error.to_field_map()["exception_class"] == "ValueError"
