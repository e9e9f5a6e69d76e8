"""Customer status vocabulary.

Every legal ``status_code`` literal is listed once in ``STATUS_TABLE`` together with
its dashboard category, its payment path and the funnel stage it belongs to. What a
transition into a status requires is read from the table, never from the shape of
the literal.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal


PaymentPath = Literal["prepaid", "postpaid", "outsourced"]
Stage = Literal[
    "waiting",
    "absent",
    "trash",
    "target",
    "contract",
    "documents",
    "application",
    "execution",
    "rejected",
]

DEFAULT_STATUS = "상담대기"
FINAL_REJECTION = "최종부결"
LEGACY_EXECUTION = "집행완료"
ALL_FILTER = "전체"

UNREGISTERED_ORG = "미등록"
PROCESSING_ORGS: tuple[str, ...] = (
    "신용취약",
    "재도전",
    "혁신",
    "일시적",
    "상생",
    "지역재단",
    "미소금융",
    "신보",
    "기보",
    "중진공",
    "농신보",
    "기업인증",
    "기타",
)
ORG_STATUSES: tuple[str, ...] = ("진행중", "부결", "승인")
ORG_APPROVED = "승인"

_PATH_SUFFIX: dict[str, PaymentPath] = {"선불": "prepaid", "외주": "outsourced", "후불": "postpaid"}

# Stages are ordered along the funnel; later stages imply the earlier ones happened.
_STAGE_RANK: dict[str, int] = {
    "contract": 1,
    "documents": 2,
    "application": 3,
    "execution": 4,
}


class UnknownStatusError(ValueError):
    def __init__(self, status: str) -> None:
        super().__init__(f"unknown status: {status!r}")
        self.status = status


@dataclass(frozen=True, slots=True)
class TransitionRequirements:
    requires_contract_info: bool = False
    requires_processing_org: bool = False
    requires_execution_info: bool = False
    requires_clawback_date: bool = False

    @property
    def has_any(self) -> bool:
        return (
            self.requires_contract_info
            or self.requires_processing_org
            or self.requires_execution_info
            or self.requires_clawback_date
        )


@dataclass(frozen=True, slots=True)
class StatusDefinition:
    code: str
    category: str
    stage: Stage
    path: PaymentPath | None = None
    requirements: TransitionRequirements = TransitionRequirements()

    @property
    def is_contract_completed(self) -> bool:
        return self.stage == "contract"

    @property
    def is_execution_completed(self) -> bool:
        return self.stage == "execution"

    @property
    def is_final_rejection(self) -> bool:
        return self.stage == "rejected"

    @property
    def is_financially_significant(self) -> bool:
        return self.stage in {"contract", "execution"}

    @property
    def funnel_rank(self) -> int:
        return _STAGE_RANK.get(self.stage, 0)


def _plain(code: str, stage: Stage, category: str | None = None) -> StatusDefinition:
    return StatusDefinition(code=code, category=category or code, stage=stage)


def _pathed(prefix: str, stage: Stage, category: str, requirements: TransitionRequirements) -> list[StatusDefinition]:
    return [
        StatusDefinition(
            code=f"{prefix}({suffix})",
            category=category,
            stage=stage,
            path=path,
            requirements=requirements,
        )
        for suffix, path in _PATH_SUFFIX.items()
    ]


_CONTRACT_INFO = TransitionRequirements(requires_contract_info=True)
_PROCESSING_ORG = TransitionRequirements(requires_processing_org=True)
_EXECUTION_INFO = TransitionRequirements(requires_execution_info=True)
_CLAWBACK_DATE = TransitionRequirements(requires_clawback_date=True)

TRASH_STATUSES: tuple[str, ...] = (
    "거절사유 미파악",
    "인증불가",
    "정부기관 오인",
    "기타자금 오인",
    "불가업종",
    "매출없음",
    "신용점수 미달",
    "차입금초과",
)
TARGET_STATUSES: tuple[str, ...] = (
    "업력미달",
    "최근대출",
    "인증미동의(국세청)",
    "인증미동의(공여내역)",
    "진행기간 미동의",
    "자문료 미동의",
    "계약금미동의(선불)",
    "계약금미동의(후불)",
)

_DEFINITIONS: list[StatusDefinition] = [
    _plain(DEFAULT_STATUS, "waiting"),
    _plain("단기부재", "absent"),
    _plain("장기부재", "absent"),
    *[_plain(code, "trash", "쓰레기통") for code in TRASH_STATUSES],
    *[_plain(code, "target", "희망타겟") for code in TARGET_STATUSES],
    *_pathed("계약완료", "contract", "계약완료", _CONTRACT_INFO),
    *_pathed("서류취합완료", "documents", "서류취합", TransitionRequirements()),
    *_pathed("신청완료", "application", "신청완료", _PROCESSING_ORG),
    StatusDefinition(
        code=LEGACY_EXECUTION,
        category="집행완료(선불)",
        stage="execution",
        path="prepaid",
        requirements=_EXECUTION_INFO,
    ),
    *[
        StatusDefinition(
            code=f"집행완료({suffix})",
            category=f"집행완료({suffix})",
            stage="execution",
            path=path,
            requirements=_EXECUTION_INFO,
        )
        for suffix, path in _PATH_SUFFIX.items()
    ],
    StatusDefinition(code=FINAL_REJECTION, category=FINAL_REJECTION, stage="rejected", requirements=_CLAWBACK_DATE),
]

STATUS_TABLE: dict[str, StatusDefinition] = {definition.code: definition for definition in _DEFINITIONS}
KNOWN_STATUSES: frozenset[str] = frozenset(STATUS_TABLE)

CATEGORIES: tuple[str, ...] = (
    "상담대기",
    "쓰레기통",
    "단기부재",
    "장기부재",
    "희망타겟",
    "계약완료",
    "서류취합",
    "신청완료",
    "집행완료(선불)",
    "집행완료(후불)",
    "집행완료(외주)",
    "최종부결",
)

_EXECUTION_GROUP_MEMBERS = frozenset(
    code for code, definition in STATUS_TABLE.items() if definition.stage in {"execution", "rejected"}
)

FUNNEL_GROUPS: dict[str, frozenset[str]] = {
    "쓰레기통": frozenset(TRASH_STATUSES),
    "희망타겟": frozenset(TARGET_STATUSES),
    "계약완료": frozenset(code for code, d in STATUS_TABLE.items() if d.stage == "contract"),
    "서류취합": frozenset(code for code, d in STATUS_TABLE.items() if d.stage == "documents"),
    "신청완료": frozenset(code for code, d in STATUS_TABLE.items() if d.stage == "application"),
    "집행완료_그룹": _EXECUTION_GROUP_MEMBERS,
    "집행완료(선불)": frozenset({LEGACY_EXECUTION, "집행완료(선불)"}),
}


def get_definition(status: str) -> StatusDefinition:
    definition = STATUS_TABLE.get(status)
    if definition is None:
        raise UnknownStatusError(status)
    return definition


def is_known(status: str | None) -> bool:
    return status in STATUS_TABLE


def classify(status: str) -> TransitionRequirements:
    return get_definition(status).requirements


def group_members(label: str) -> frozenset[str]:
    """Statuses rolled up under ``label``; empty when ``label`` is a plain status."""
    return FUNNEL_GROUPS.get(label, frozenset())


def group_of(status: str) -> str:
    return get_definition(status).category


def matches_filter(status: str, label: str) -> bool:
    if label == ALL_FILTER:
        return True
    members = group_members(label)
    if members:
        return status in members
    return status == label


def count_by_category(statuses: Iterable[str]) -> dict[str, int]:
    counts = {category: 0 for category in CATEGORIES}
    for status in statuses:
        definition = STATUS_TABLE.get(status)
        if definition is None:
            continue
        counts[definition.category] += 1
    return counts


def is_known_org(org: str | None) -> bool:
    return org in PROCESSING_ORGS


def has_reached(status: str, stage: Stage) -> bool:
    """True when ``status`` sits at or beyond ``stage`` on the contract funnel."""
    definition = get_definition(status)
    target_rank = _STAGE_RANK.get(stage, 0)
    return target_rank > 0 and definition.funnel_rank >= target_rank
