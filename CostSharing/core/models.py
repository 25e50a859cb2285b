"""Records, enums and the group snapshot wire format.

Every record is a dataclass that knows how to turn itself into a flat row (for the local
SQLite store) and into a camelCase dictionary (for the JSON snapshot kept on Google Drive).
Money is always a :class:`decimal.Decimal` quantised to cents and timestamps are timezone-aware UTC.
"""
import dataclasses
import datetime
import decimal
import enum
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from ..status import status

CENT = decimal.Decimal('0.01')
ZERO = decimal.Decimal('0.00')
EPSILON = decimal.Decimal('0.01')


class SyncStatus(enum.StrEnum):
    """Synchronisation state of a single group."""
    NotSynced = 'NotSynced'
    PendingUpload = 'PendingUpload'
    PendingDownload = 'PendingDownload'
    Syncing = 'Syncing'
    Synced = 'Synced'
    Conflict = 'Conflict'
    Error = 'Error'


ALLOWED_TRANSITIONS: Dict[SyncStatus, Tuple[SyncStatus, ...]] = {
    SyncStatus.NotSynced: (SyncStatus.PendingUpload, SyncStatus.PendingDownload, SyncStatus.Syncing),
    SyncStatus.PendingUpload: (SyncStatus.Syncing, SyncStatus.Error),
    SyncStatus.PendingDownload: (SyncStatus.Syncing, SyncStatus.Error),
    SyncStatus.Syncing: (
        SyncStatus.Synced, SyncStatus.Error, SyncStatus.Conflict,
        SyncStatus.PendingUpload, SyncStatus.PendingDownload,
    ),
    SyncStatus.Synced: (SyncStatus.PendingUpload, SyncStatus.PendingDownload, SyncStatus.Syncing),
    SyncStatus.Error: (SyncStatus.Syncing, SyncStatus.Synced),
    SyncStatus.Conflict: (SyncStatus.Syncing, SyncStatus.Synced),
}


def can_transition(current: SyncStatus, new: SyncStatus) -> bool:
    """Return True if ``current`` may move to ``new``. Staying put is always allowed."""
    if current == new:
        return True
    return new in ALLOWED_TRANSITIONS[current]


def check_transition(current: SyncStatus, new: SyncStatus) -> None:
    """Raise if ``current`` -> ``new`` is not in the transition table.

    Raises:
        status.IllegalTransitionException: If the transition is not allowed.
    """
    if not can_transition(current, new):
        raise status.IllegalTransitionException(f'{current.value} -> {new.value}')


class MemberRole(enum.StrEnum):
    Member = 'Member'
    Admin = 'Admin'


class SplitType(enum.StrEnum):
    Even = 'Even'
    Custom = 'Custom'


class SettlementStatus(enum.StrEnum):
    Pending = 'Pending'
    Confirmed = 'Confirmed'
    Cancelled = 'Cancelled'


class ChangeOperation(enum.StrEnum):
    Create = 'Create'
    Update = 'Update'
    Delete = 'Delete'


class EntityType(enum.StrEnum):
    """Entity kinds that can be queued for upload."""
    Group = 'Group'
    Member = 'Member'
    Expense = 'Expense'
    Settlement = 'Settlement'


def new_id() -> str:
    """Return a fresh identifier for a locally created record."""
    return uuid.uuid4().hex


def utc_now() -> datetime.datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime.datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) into an aware UTC datetime.

    Naive values are assumed to be UTC.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime.datetime):
        dt = value
    else:
        try:
            dt = datetime.datetime.fromisoformat(str(value))
        except ValueError as ex:
            raise status.ValidationException(f'Invalid timestamp "{value}".') from ex
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def format_datetime(value: Optional[datetime.datetime]) -> Optional[str]:
    if value is None:
        return None
    return parse_datetime(value).isoformat()


def to_money(value: Any) -> decimal.Decimal:
    """Convert a number or numeric string to a cent-quantised Decimal.

    Rounds half away from zero.

    Raises:
        status.InvalidAmountException: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise status.InvalidAmountException(f'"{value}" is not an amount.')
    try:
        # floats go through str() so 0.1 becomes Decimal('0.1') and not its binary expansion
        d = value if isinstance(value, decimal.Decimal) else decimal.Decimal(str(value).strip())
    except (decimal.InvalidOperation, ValueError, TypeError) as ex:
        raise status.InvalidAmountException(f'"{value}" is not an amount.') from ex
    if not d.is_finite():
        raise status.InvalidAmountException(f'"{value}" is not a finite amount.')
    return d.quantize(CENT, rounding=decimal.ROUND_HALF_UP)


def round_money(value: decimal.Decimal) -> decimal.Decimal:
    """Round an exact Decimal to cents, half away from zero."""
    return value.quantize(CENT, rounding=decimal.ROUND_HALF_UP)


def camel_case(name: str) -> str:
    """Convert a snake_case field name into its camelCase wire key."""
    head, *tail = name.split('_')
    return head + ''.join(part.capitalize() for part in tail)


@dataclass
class Record:
    """Base of every persisted record.

    Subclasses declare which of their fields hold money, exact decimals, timestamps or enums so that
    they can be converted to and from rows and wire dictionaries.
    """
    table: ClassVar[str] = ''
    key: ClassVar[str] = 'id'
    money_fields: ClassVar[Tuple[str, ...]] = ()
    decimal_fields: ClassVar[Tuple[str, ...]] = ()
    datetime_fields: ClassVar[Tuple[str, ...]] = ()
    enum_fields: ClassVar[Dict[str, type]] = {}
    int_fields: ClassVar[Tuple[str, ...]] = ()

    @property
    def identity(self) -> str:
        return getattr(self, self.key)

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in dataclasses.fields(cls)]

    def to_row(self) -> Dict[str, Any]:
        """Return a flat dictionary of SQLite-friendly values keyed by field name."""
        row: Dict[str, Any] = {}
        for name in self.field_names():
            value = getattr(self, name)
            if value is None:
                row[name] = None
            elif name in self.money_fields:
                row[name] = f'{to_money(value):.2f}'
            elif name in self.decimal_fields:
                row[name] = str(value)
            elif name in self.datetime_fields:
                row[name] = format_datetime(value)
            elif name in self.enum_fields:
                row[name] = str(value)
            else:
                row[name] = value
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Record':
        """Build a record from a row produced by :meth:`to_row` (extra keys are ignored)."""
        kwargs: Dict[str, Any] = {}
        for name in cls.field_names():
            if name not in row:
                continue
            value = row[name]
            if value is None:
                kwargs[name] = None
            elif name in cls.money_fields:
                kwargs[name] = to_money(value)
            elif name in cls.decimal_fields:
                try:
                    kwargs[name] = decimal.Decimal(str(value))
                except decimal.InvalidOperation as ex:
                    raise status.ValidationException(f'Invalid {name} "{value}".') from ex
            elif name in cls.datetime_fields:
                kwargs[name] = parse_datetime(value)
            elif name in cls.enum_fields:
                try:
                    kwargs[name] = cls.enum_fields[name](value)
                except ValueError as ex:
                    raise status.ValidationException(f'Invalid {name} "{value}".') from ex
            elif name in cls.int_fields:
                kwargs[name] = int(value)
            else:
                kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Return the camelCase wire dictionary."""
        return {camel_case(k): v for k, v in self.to_row().items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Record':
        """Parse a camelCase wire dictionary."""
        return cls.from_row({name: data[camel_case(name)] for name in cls.field_names() if camel_case(name) in data})

    def copy(self, **changes: Any) -> 'Record':
        return dataclasses.replace(self, **changes)


@dataclass
class Group(Record):
    table: ClassVar[str] = 'groups'
    datetime_fields: ClassVar[Tuple[str, ...]] = ('created_at', 'updated_at')

    id: str
    name: str
    creator_id: str
    created_at: datetime.datetime = field(default_factory=utc_now)
    updated_at: datetime.datetime = field(default_factory=utc_now)
    currency: str = 'AUD'


@dataclass
class GroupMember(Record):
    table: ClassVar[str] = 'members'
    datetime_fields: ClassVar[Tuple[str, ...]] = ('joined_at',)
    enum_fields: ClassVar[Dict[str, type]] = {'role': MemberRole}

    id: str
    group_id: str
    user_id: str
    email: Optional[str] = None
    role: MemberRole = MemberRole.Member
    joined_at: datetime.datetime = field(default_factory=utc_now)
    added_by: Optional[str] = None


@dataclass
class Expense(Record):
    table: ClassVar[str] = 'expenses'
    money_fields: ClassVar[Tuple[str, ...]] = ('total_amount',)
    datetime_fields: ClassVar[Tuple[str, ...]] = ('expense_date', 'created_at', 'updated_at')
    enum_fields: ClassVar[Dict[str, type]] = {'split_type': SplitType}

    id: str
    group_id: str
    description: str
    total_amount: decimal.Decimal
    paid_by: str
    split_type: SplitType = SplitType.Even
    expense_date: datetime.datetime = field(default_factory=utc_now)
    created_at: datetime.datetime = field(default_factory=utc_now)
    created_by: Optional[str] = None
    updated_at: datetime.datetime = field(default_factory=utc_now)


@dataclass
class ExpenseSplit(Record):
    table: ClassVar[str] = 'expense_splits'
    money_fields: ClassVar[Tuple[str, ...]] = ('amount',)
    decimal_fields: ClassVar[Tuple[str, ...]] = ('percentage',)

    id: str
    expense_id: str
    user_id: str
    amount: decimal.Decimal
    percentage: decimal.Decimal = ZERO


@dataclass
class Settlement(Record):
    table: ClassVar[str] = 'settlements'
    money_fields: ClassVar[Tuple[str, ...]] = ('amount',)
    datetime_fields: ClassVar[Tuple[str, ...]] = ('settled_at', 'updated_at')
    enum_fields: ClassVar[Dict[str, type]] = {'status': SettlementStatus}

    id: str
    group_id: str
    paid_by: str
    paid_to: str
    amount: decimal.Decimal
    status: SettlementStatus = SettlementStatus.Pending
    settled_at: datetime.datetime = field(default_factory=utc_now)
    recorded_by: Optional[str] = None
    confirmed_by: Optional[str] = None
    updated_at: datetime.datetime = field(default_factory=utc_now)


@dataclass
class SyncMetadata(Record):
    table: ClassVar[str] = 'sync_metadata'
    key: ClassVar[str] = 'group_id'
    datetime_fields: ClassVar[Tuple[str, ...]] = (
        'last_sync_time', 'local_last_modified', 'remote_last_modified',
    )
    enum_fields: ClassVar[Dict[str, type]] = {'status': SyncStatus}
    int_fields: ClassVar[Tuple[str, ...]] = ('version',)

    group_id: str
    remote_file_id: Optional[str] = None
    last_sync_time: Optional[datetime.datetime] = None
    local_last_modified: datetime.datetime = field(default_factory=utc_now)
    remote_last_modified: Optional[datetime.datetime] = None
    status: SyncStatus = SyncStatus.NotSynced
    version: int = 0
    error_message: Optional[str] = None


@dataclass
class PendingChange(Record):
    table: ClassVar[str] = 'pending_changes'
    datetime_fields: ClassVar[Tuple[str, ...]] = ('created_at',)
    enum_fields: ClassVar[Dict[str, type]] = {'entity_type': EntityType, 'operation': ChangeOperation}
    int_fields: ClassVar[Tuple[str, ...]] = ('retry_count', 'sequence')

    id: str
    group_id: str
    entity_type: EntityType
    entity_id: str
    operation: ChangeOperation
    payload: str = '{}'
    created_at: datetime.datetime = field(default_factory=utc_now)
    retry_count: int = 0
    last_error: Optional[str] = None
    sequence: int = 0


@dataclass(frozen=True)
class Debt:
    """A derived amount ``debtor_id`` owes ``creditor_id``."""
    debtor_id: str
    creditor_id: str
    amount: decimal.Decimal


@dataclass(frozen=True)
class SimplifiedTransaction:
    """A single payment proposed by debt simplification."""
    from_user_id: str
    to_user_id: str
    amount: decimal.Decimal


@dataclass(frozen=True)
class SimplificationSummary:
    original_count: int
    simplified_count: int
    transactions_saved: int
    total_amount: decimal.Decimal


@dataclass(frozen=True)
class RemoteMetadata:
    """Version stamp of a snapshot as reported by the remote store."""
    version: int
    last_modified: Optional[datetime.datetime]


@dataclass
class GroupSnapshot:
    """The complete state of one group as exchanged with the remote store."""
    group: Group
    members: List[GroupMember] = field(default_factory=list)
    expenses: List[Expense] = field(default_factory=list)
    expense_splits: List[ExpenseSplit] = field(default_factory=list)
    settlements: List[Settlement] = field(default_factory=list)
    last_modified: datetime.datetime = field(default_factory=utc_now)
    version: int = 0
    last_modified_by: Optional[str] = None

    @property
    def group_id(self) -> str:
        return self.group.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'group': self.group.to_dict(),
            'members': [m.to_dict() for m in self.members],
            'expenses': [e.to_dict() for e in self.expenses],
            'expenseSplits': [s.to_dict() for s in self.expense_splits],
            'settlements': [s.to_dict() for s in self.settlements],
            'lastModified': format_datetime(self.last_modified),
            'version': self.version,
            'lastModifiedBy': self.last_modified_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GroupSnapshot':
        """Parse a snapshot dictionary.

        Raises:
            status.SnapshotInvalidException: If required keys are missing or values are malformed.
        """
        if not isinstance(data, dict) or not isinstance(data.get('group'), dict):
            raise status.SnapshotInvalidException('Snapshot has no "group" object.')
        try:
            return cls(
                group=Group.from_dict(data['group']),
                members=[GroupMember.from_dict(m) for m in data.get('members') or []],
                expenses=[Expense.from_dict(e) for e in data.get('expenses') or []],
                expense_splits=[ExpenseSplit.from_dict(s) for s in data.get('expenseSplits') or []],
                settlements=[Settlement.from_dict(s) for s in data.get('settlements') or []],
                last_modified=parse_datetime(data.get('lastModified')) or utc_now(),
                version=int(data.get('version') or 0),
                last_modified_by=data.get('lastModifiedBy'),
            )
        except (TypeError, KeyError, ValueError, status.ValidationException) as ex:
            raise status.SnapshotInvalidException(f'Malformed snapshot: {ex}') from ex

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'GroupSnapshot':
        try:
            parsed = json.loads(data.decode('utf-8') if isinstance(data, bytes) else data)
        except (UnicodeDecodeError, json.JSONDecodeError) as ex:
            logging.debug(f'Snapshot payload is not JSON: {ex}')
            raise status.SnapshotInvalidException(str(ex)) from ex
        return cls.from_dict(parsed)
