"""
Booking Service: 予約のリードモデル

AppointmentRow はリードストアが返す非正規化なしのフラットな行。
それ以外のモデルは、fetcher が場所・従業員・利用者の参照を解決した後に返す形。
"""

from dataclasses import dataclass
from datetime import datetime

from .directory import Employee, Place, User


@dataclass(frozen=True)
class AppointmentRow:
    id: str
    title: str
    place_id: str
    targeted_to: str | None
    scheduled_by: str
    schedule_time: datetime
    status: str
    notes: str
    create_time: datetime
    is_deleted: bool = False


@dataclass(frozen=True)
class AppointmentDetails:
    id: str
    title: str
    place: Place
    targeted_to: Employee | None
    scheduled_by: User
    schedule_time: datetime
    status: str
    notes: str


@dataclass(frozen=True)
class UserAppointment:
    """利用者ごとの予約一覧の 1 件"""

    id: str
    title: str
    place: Place | None
    targeted_to: Employee | None
    schedule_time: datetime
    status: str


@dataclass(frozen=True)
class PlaceAppointment:
    """場所ごとの予約一覧の 1 件"""

    id: str
    title: str
    targeted_to: Employee | None
    scheduled_by: User | None
    schedule_time: datetime
    status: str
