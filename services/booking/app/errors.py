"""
Booking Service: ドメインエラー

各エラーは機械可読な code を持ち、HTTP 層がステータスコードに
対応付けるカテゴリのいずれかに属する:

    InvalidArgument     -> 400
    NotFound            -> 404
    AlreadyExists       -> 409
    Conflict            -> 409
    FailedPrecondition  -> 412
"""


class DomainError(Exception):
    """ドメイン層のエラーの基底クラス"""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class InvalidArgument(DomainError):
    pass


class FailedPrecondition(DomainError):
    pass


class NotFound(DomainError):
    pass


class AlreadyExists(DomainError):
    pass


class Conflict(DomainError):
    pass


# ── Appointment ──────────────────────────────────


class ScheduledBeforeNow(InvalidArgument):
    def __init__(self):
        super().__init__(
            code="SCHEDULED_BEFORE_CURRENT_TIME",
            message="appointment scheduled before current time",
        )


class InvalidStatus(InvalidArgument):
    def __init__(self, value: str = ""):
        super().__init__(
            code="INVALID_STATUS",
            message=f"status must be one of SCHEDULED, CANCELLED, COMPLETED (got {value!r})",
        )
        self.value = value


class AppointmentAlreadyCompleted(FailedPrecondition):
    def __init__(self, appointment_id: str = ""):
        super().__init__(
            code="APPOINTMENT_ALREADY_COMPLETED",
            message=f"appointment is already completed: {appointment_id}",
        )


class AppointmentNotFound(NotFound):
    def __init__(self, appointment_id: str = ""):
        super().__init__(
            code="APPOINTMENT_NOT_FOUND",
            message=f"appointment not found: {appointment_id}",
        )


# ── Organization ─────────────────────────────────


class OrganizationNotFound(NotFound):
    def __init__(self, organization_id: str = ""):
        super().__init__(
            code="ORGANIZATION_NOT_FOUND",
            message=f"organization not found: {organization_id}",
        )


class OrganizationAlreadyExists(AlreadyExists):
    def __init__(self, name: str = ""):
        super().__init__(
            code="ORGANIZATION_ALREADY_EXISTS",
            message=f"organization already exists: {name}",
        )


# ── Directory (場所・従業員・利用者) ─────────────


class PlaceNotFound(NotFound):
    def __init__(self, place_id: str = ""):
        super().__init__(code="PLACE_NOT_FOUND", message=f"place not found: {place_id}")


class EmployeeNotFound(NotFound):
    def __init__(self, employee_id: str = ""):
        super().__init__(code="EMPLOYEE_NOT_FOUND", message=f"employee not found: {employee_id}")


class UserNotFound(NotFound):
    def __init__(self, user_id: str = ""):
        super().__init__(code="USER_NOT_FOUND", message=f"user not found: {user_id}")


# ── Persistence ──────────────────────────────────


class VersionConflict(Conflict):
    """集約を読み込んだ後に保存済みの行が変更された。"""

    def __init__(self, entity: str, key: str, expected_version: int | None):
        super().__init__(
            code="VERSION_CONFLICT",
            message=f"{entity} {key} was modified concurrently (expected version {expected_version})",
        )
        self.entity = entity
        self.key = key
        self.expected_version = expected_version


class NoResults(NotFound):
    def __init__(self, resource: str = "items"):
        super().__init__(code="NO_RESULTS", message=f"no {resource} found")


class MalformedPageToken(InvalidArgument):
    def __init__(self, reason: str = "page token could not be read"):
        super().__init__(code="MALFORMED_PAGE_TOKEN", message=reason)


class UnknownField(InvalidArgument):
    def __init__(self, field: str):
        super().__init__(code="UNKNOWN_FIELD", message=f"field cannot be used for listing: {field}")
        self.field = field
