"""
Bulk upsert of LDAP group members into a Mailchimp list.

The pipeline walks the members of a resolved group lazily and upserts each one
into the resolved list, keeping at most ``concurrency`` upserts in flight.
The first failed upsert stops the run: no further members are submitted,
upserts already in flight are allowed to finish, and ``UpsertFailed`` is
raised for the failing address. Upserts that succeeded are not rolled back.
"""

import logging
from datetime import datetime
from concurrent.futures import ThreadPoolExecutor, FIRST_COMPLETED, wait
from typing import Dict, Iterable, Iterator, Optional

from ldap_mailchimp_sync.config import DEFAULT_MERGE_FIELDS
from ldap_mailchimp_sync.errors import DestinationUnavailable, UpsertFailed
from ldap_mailchimp_sync.models import (
    Collection, MailingList, MemberRecord, SyncReport, UpsertOptions, UpsertResult
)

logger = logging.getLogger(__name__)

# Directory sync, not a signup: never trigger opt-in or welcome mails
SYNC_UPSERT_OPTIONS = UpsertOptions(update_existing=True, double_optin=False, send_welcome=False)


def build_merge_fields(record: MemberRecord, merge_field_map: Dict[str, str]) -> Dict[str, str]:
    """Map record attributes onto Mailchimp merge tags, leaving out empty values."""
    merge_fields = {}
    for attribute, tag in merge_field_map.items():
        value = getattr(record, attribute, '')
        if value:
            merge_fields[tag] = value
    return merge_fields


def _close(members: Iterable) -> None:
    close = getattr(members, 'close', None)
    if close is not None:
        close()


class BulkUpsertPipeline:
    """
    Drives every member of an LDAP group through a Mailchimp upsert.

    Both clients are passed in by the caller and only used for reads and
    upserts; the pipeline never connects or closes them.
    """

    def __init__(self, directory_client, mailchimp_client,
                 merge_field_map: Optional[Dict[str, str]] = None, concurrency: int = 1):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.directory_client = directory_client
        self.mailchimp_client = mailchimp_client
        self.merge_field_map = dict(merge_field_map or DEFAULT_MERGE_FIELDS)
        self.concurrency = concurrency

    def run(self, collection: Collection, mailing_list: MailingList) -> SyncReport:
        """
        Upsert every member of ``collection`` into ``mailing_list``.

        Returns:
            SyncReport with attempted and succeeded counts

        Raises:
            SourceUnavailable: If member enumeration fails
            UpsertFailed: On the first failed upsert
        """
        report = SyncReport(collection=collection, mailing_list=mailing_list)
        logger.info(f"Syncing group '{collection.name}' -> list '{mailing_list.name}' "
                    f"(concurrency={self.concurrency})")

        members = self.directory_client.iter_members(collection)
        try:
            if self.concurrency == 1:
                self._run_sequential(members, mailing_list, report)
            else:
                self._run_pooled(members, mailing_list, report)
        finally:
            _close(members)

        report.end_time = datetime.now()
        return report

    def upsert(self, record: MemberRecord, mailing_list: MailingList) -> UpsertResult:
        """Upsert one record and capture the outcome."""
        try:
            self.mailchimp_client.upsert_subscriber(
                mailing_list.id,
                record.email,
                build_merge_fields(record, self.merge_field_map),
                SYNC_UPSERT_OPTIONS
            )
        except DestinationUnavailable as e:
            return UpsertResult(email=record.email, error=e)
        logger.info(f"Upserted {record.email}")
        return UpsertResult(email=record.email)

    def _run_sequential(self, members: Iterator[MemberRecord], mailing_list: MailingList,
                        report: SyncReport) -> None:
        for record in members:
            report.attempted += 1
            result = self.upsert(record, mailing_list)
            if not result.ok:
                self._fail(result)
            report.succeeded += 1

    def _run_pooled(self, members: Iterator[MemberRecord], mailing_list: MailingList,
                    report: SyncReport) -> None:
        failure = None
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix='upsert') as executor:
            in_flight = set()
            for record in members:
                if len(in_flight) >= self.concurrency:
                    done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                    failure = self._collect(done, report)
                    if failure:
                        break
                in_flight.add(executor.submit(self.upsert, record, mailing_list))
                report.attempted += 1

            if in_flight:
                done, _ = wait(in_flight)
                later_failure = self._collect(done, report)
                failure = failure or later_failure

        if failure:
            self._fail(failure)

    def _collect(self, done, report: SyncReport) -> Optional[UpsertResult]:
        """Count finished upserts and return the first failure among them."""
        failure = None
        for future in done:
            result = future.result()
            if result.ok:
                report.succeeded += 1
            elif failure is None:
                failure = result
            else:
                logger.error(f"Upsert of {result.email} also failed: {result.error}")
        return failure

    def _fail(self, result: UpsertResult):
        logger.error(f"Upsert of {result.email} failed, aborting sync: {result.error}")
        raise UpsertFailed(result.email, result.error) from result.error
