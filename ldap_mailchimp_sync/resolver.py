"""
Name resolution for LDAP groups and Mailchimp lists.
"""

import logging
from typing import Iterable, Type, TypeVar

from ldap_mailchimp_sync.errors import NotFound, SyncError, SourceUnavailable, DestinationUnavailable
from ldap_mailchimp_sync.models import Collection, MailingList

logger = logging.getLogger(__name__)

T = TypeVar('T')


def find_by_name(name: str, candidates: Iterable[T], kind: str,
                 unavailable: Type[SyncError]) -> T:
    """
    Return the first candidate whose ``name`` equals ``name`` ignoring case.

    Candidates are consumed lazily and iteration stops at the first match.

    Raises:
        NotFound: If no candidate matches
        unavailable: If enumerating the candidates fails
    """
    wanted = name.lower()
    try:
        for candidate in candidates:
            if candidate.name.lower() == wanted:
                logger.debug(f"Resolved {kind} '{name}' to {candidate}")
                return candidate
    except unavailable:
        raise
    except SyncError as e:
        raise unavailable(f"Failed to enumerate {kind}s: {e}") from e
    raise NotFound(kind, name)


def resolve_collection(directory_client, name: str) -> Collection:
    """Resolve an LDAP group by name."""
    return find_by_name(name, directory_client.find_collections(name), 'collection', SourceUnavailable)


def resolve_list(mailchimp_client, name: str) -> MailingList:
    """Resolve a Mailchimp list by name."""
    return find_by_name(name, mailchimp_client.list_all_lists(), 'list', DestinationUnavailable)
