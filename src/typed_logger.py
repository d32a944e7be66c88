"""
Typed logging facade.

One method per log category, each accepting only its own log object type.
Logs are deferred to the end of the execution context unless defer=False.
"""

import warnings
from typing import Type

from log_objects import (
    ApiLogObject,
    ErrorLogObject,
    GeneralLogObject,
    IntegrationLogObject,
    JobLogObject,
    LogObject,
    OrmLogObject,
)
from multi_channel import MultiChannelLogger


def _require(log_object: object, expected: Type[LogObject], method: str) -> None:
    if not isinstance(log_object, expected):
        raise TypeError(f"{method}() expects {expected.__name__}, got {type(log_object).__name__}")


class TypedLogger:
    def __init__(self, multi: MultiChannelLogger):
        self.multi = multi

    def general(self, log_object: GeneralLogObject, defer: bool = True) -> None:
        _require(log_object, GeneralLogObject, "general")
        self.multi.log(log_object, defer)

    def api(self, log_object: ApiLogObject, defer: bool = True) -> None:
        _require(log_object, ApiLogObject, "api")
        self.multi.log(log_object, defer)

    def job(self, log_object: JobLogObject, defer: bool = True) -> None:
        """Job or scheduled command run; CronLogObject is accepted too."""
        _require(log_object, JobLogObject, "job")
        self.multi.log(log_object, defer)

    def cron(self, log_object: JobLogObject, defer: bool = True) -> None:
        """Deprecated alias of job()."""
        warnings.warn("TypedLogger.cron() is deprecated, use job()", DeprecationWarning, stacklevel=2)
        _require(log_object, JobLogObject, "cron")
        self.multi.log(log_object, defer)

    def integration(self, log_object: IntegrationLogObject, defer: bool = True) -> None:
        _require(log_object, IntegrationLogObject, "integration")
        self.multi.log(log_object, defer)

    def orm(self, log_object: OrmLogObject, defer: bool = True) -> None:
        _require(log_object, OrmLogObject, "orm")
        self.multi.log(log_object, defer)

    def error(self, log_object: ErrorLogObject, defer: bool = True) -> None:
        _require(log_object, ErrorLogObject, "error")
        self.multi.log(log_object, defer)
