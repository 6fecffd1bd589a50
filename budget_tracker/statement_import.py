import logging
from datetime import datetime

from .categorize import categorize_description, find_fallback_category
from .statement_parsers import (
    DATE_FORMATS,
    DEFAULT_DATE_FORMAT,
    StatementFormatError,
    StatementImportError,
    detect_statement_kind,
    parse_statement,
)


logger = logging.getLogger(__name__)

DUPLICATE_AMOUNT_TOLERANCE = 0.01
DUPLICATE_DESCRIPTION_PREFIX = 10
ALL_ACCOUNTS = "all"

STATE_IDLE = "idle"
STATE_FILE_SELECTED = "file_selected"
STATE_PREVIEWING = "previewing"
STATE_CONFIRMED = "confirmed"
STATE_CANCELLED = "cancelled"

DROP_DUPLICATE = "duplicate"
DROP_UNCATEGORIZED = "uncategorized"


class AccountSelectionError(StatementImportError):
    """Raised when an import is confirmed without choosing a single account."""


class ImportCommitError(StatementImportError):
    """Raised when queued rows fail the final validation before persisting."""


class ImportStateError(StatementImportError):
    """Raised on an operation the import session does not allow in its current state."""


def is_duplicate(candidate, existing):
    if candidate.get("date") != existing.get("date"):
        return False
    try:
        amount_delta = abs(float(candidate.get("amount")) - float(existing.get("amount")))
    except (TypeError, ValueError):
        return False
    if amount_delta >= DUPLICATE_AMOUNT_TOLERANCE:
        return False
    prefix = (existing.get("description") or "").lower()[:DUPLICATE_DESCRIPTION_PREFIX]
    return prefix in (candidate.get("description") or "").lower()


def find_duplicate(candidate, existing_transactions):
    for existing in existing_transactions:
        if is_duplicate(candidate, existing):
            return existing
    return None


def is_valid_iso_date(value):
    try:
        parsed = datetime.strptime(value or "", "%Y-%m-%d")
    except ValueError:
        return False
    return 1900 <= parsed.year <= 2100


def build_import_summary(total):
    return {
        "imported": 0,
        "duplicates": 0,
        "skipped": 0,
        "total": total,
        "transactions": [],
        "dropped": [],
    }


class StatementImport:
    """One statement import, from file selection to confirm or cancel.

    ``state`` is always one of the ``STATE_*`` values; each method checks it
    and raises :class:`ImportStateError` on an illegal transition. Confirmed and
    cancelled imports return to ``STATE_IDLE``; ``last_outcome`` then records
    which of ``STATE_CONFIRMED`` or ``STATE_CANCELLED`` ended the previous file.
    """

    def __init__(self, date_format=DEFAULT_DATE_FORMAT):
        self._check_date_format(date_format)
        self.date_format = date_format
        self.last_outcome = None
        self._reset()

    def _reset(self):
        self.state = STATE_IDLE
        self.filename = None
        self.file_kind = None
        self.raw_text = None
        self.candidates = []

    @staticmethod
    def _check_date_format(date_format):
        if date_format not in DATE_FORMATS:
            raise StatementFormatError(f"Unknown date format {date_format!r}; expected one of {', '.join(DATE_FORMATS)}")

    def _require(self, *states):
        if self.state not in states:
            raise ImportStateError(f"Cannot do that while the import is {self.state}")

    @classmethod
    def restore(cls, filename, raw_text, date_format=DEFAULT_DATE_FORMAT):
        statement_import = cls(date_format)
        statement_import.select_file(filename, raw_text)
        statement_import.parse()
        return statement_import

    def select_file(self, filename, raw_text):
        self._require(STATE_IDLE)
        self.filename = filename
        self.raw_text = raw_text or ""
        self.state = STATE_FILE_SELECTED
        return self

    def parse(self):
        self._require(STATE_FILE_SELECTED)
        try:
            self.file_kind = detect_statement_kind(self.filename)
            self.candidates = parse_statement(self.file_kind, self.raw_text, self.date_format)
        except StatementFormatError:
            self._reset()
            raise
        self.state = STATE_PREVIEWING
        return self.candidates

    def preview(self, history=(), categories=()):
        if self.state == STATE_FILE_SELECTED:
            self.parse()
        self._require(STATE_PREVIEWING)
        return self.preview_rows(history, categories)

    def preview_rows(self, history=(), categories=()):
        self._require(STATE_PREVIEWING)
        history = list(history)
        categories = list(categories)
        rows = []
        for index, candidate in enumerate(self.candidates):
            guess = categorize_description(candidate["description"], history, categories)
            row = dict(candidate)
            row.update(
                {
                    "row_index": index,
                    "suggested_category_id": guess["category_id"],
                    "suggested_group": guess["group"],
                    "suggested_category": guess["category"],
                    "suggested_source": guess["source"],
                }
            )
            rows.append(row)
        return rows

    def change_date_format(self, date_format):
        self._check_date_format(date_format)
        self._require(STATE_IDLE, STATE_PREVIEWING)
        self.date_format = date_format
        if self.state == STATE_PREVIEWING:
            self.candidates = parse_statement(self.file_kind, self.raw_text, self.date_format)
        return self.candidates

    def cancel(self):
        self._require(STATE_FILE_SELECTED, STATE_PREVIEWING)
        self._reset()
        self.last_outcome = STATE_CANCELLED

    def confirm(self, account_id, history, categories, persist):
        """Deduplicate, categorize and persist the previewed candidates.

        ``persist`` receives the full list of rows to insert and is called at
        most once; whatever it raises propagates unchanged. Any failure after
        the account check leaves the import idle with nothing retained.
        """
        self._require(STATE_PREVIEWING)
        if account_id in (None, "") or str(account_id).strip().lower() == ALL_ACCOUNTS:
            raise AccountSelectionError("Select a specific account before importing.")

        existing = list(history)
        categories = list(categories)
        summary = build_import_summary(len(self.candidates))
        queued = []
        fallback = None
        fallback_resolved = False

        for candidate in self.candidates:
            if find_duplicate(candidate, existing) is not None:
                summary["duplicates"] += 1
                summary["dropped"].append({"transaction": dict(candidate), "reason": DROP_DUPLICATE})
                continue

            guess = categorize_description(candidate["description"], existing, categories)
            if guess["category_id"] is None:
                if not fallback_resolved:
                    fallback = find_fallback_category(categories)
                    fallback_resolved = True
                if fallback is None:
                    summary["skipped"] += 1
                    summary["dropped"].append({"transaction": dict(candidate), "reason": DROP_UNCATEGORIZED})
                    logger.debug("No category for %r and no fallback category; skipping", candidate["description"])
                    continue
                guess = {
                    "category_id": fallback["id"],
                    "group": fallback.get("group") or "",
                    "category": fallback["name"],
                    "source": "fallback",
                }

            queued.append(
                {
                    "account_id": account_id,
                    "category_id": guess["category_id"],
                    "amount": candidate["amount"],
                    "description": candidate["description"],
                    "date": candidate["date"],
                    "is_pending": False,
                    "check_number": candidate.get("check_number"),
                    "group": guess["group"],
                    "category": guess["category"],
                    "category_source": guess["source"],
                }
            )

        invalid_dates = [row["date"] for row in queued if not is_valid_iso_date(row["date"])]
        if invalid_dates:
            self._reset()
            raise ImportCommitError(f"Import aborted: invalid transaction date(s) {', '.join(map(str, invalid_dates))}")

        if queued:
            try:
                persist(queued)
            except Exception:
                self._reset()
                raise

        summary["imported"] = len(queued)
        summary["transactions"] = queued
        self._reset()
        self.last_outcome = STATE_CONFIRMED
        return summary
