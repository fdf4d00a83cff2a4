"""
Record types passed between the directory client, the Mailchimp client and the pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class CredentialBundle:
    """Credentials for both systems, built once per run from configuration."""
    source_key_id: str
    source_key_secret: str
    destination_key: str

    def __repr__(self):
        return f"CredentialBundle(source_key_id={self.source_key_id!r}, source_key_secret='****', destination_key='****')"


@dataclass(frozen=True)
class Collection:
    """An LDAP group. ``id`` is the group DN, ``name`` its cn."""
    id: str
    name: str


@dataclass(frozen=True)
class MailingList:
    """A Mailchimp audience."""
    id: str
    name: str


@dataclass(frozen=True)
class MemberRecord:
    email: str
    status: str = ''
    given_name: str = ''
    family_name: str = ''
    full_name: str = ''
    username: str = ''
    id: str = ''
    collection_id: str = ''
    created_at: str = ''


@dataclass(frozen=True)
class UpsertOptions:
    update_existing: bool = True
    double_optin: bool = False
    send_welcome: bool = False


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of one subscriber upsert."""
    email: str
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SyncReport:
    """Totals for one pipeline run, logged in the sync summary."""
    collection: Collection
    mailing_list: MailingList
    attempted: int = 0
    succeeded: int = 0
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None

    @property
    def runtime_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()
