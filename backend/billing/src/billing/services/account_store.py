"""Account store adapter: the narrow read/modify interface to account records.

Accounts are owned by the wider application; this core only reads the
billing fields and writes them back through field-level partial updates.
A full-record put is never used for mutation, so concurrent writes to
unrelated attributes (profile, preferences, ...) are never clobbered.
"""

import logging
from enum import Enum
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from billing.models.account import MUTABLE_FIELDS, Account
from billing.models.errors import AccountNotFound, StoreUnavailable

from .dynamodb import DynamoDBService, build_update_expression

logger = logging.getLogger(__name__)


class AccountStore:
    """Reads and partially updates account records in DynamoDB."""

    ACCOUNTS_TABLE = "accounts"

    def __init__(self, db: DynamoDBService) -> None:
        """Initialize account store.

        Args:
            db: DynamoDB service instance
        """
        self._db = db

    def get(self, account_id: str) -> Account:
        """Fetch an account.

        Args:
            account_id: Account primary key

        Returns:
            The account

        Raises:
            AccountNotFound: No record for this ID
            StoreUnavailable: The store could not be read
        """
        try:
            item = self._db.get_item(self.ACCOUNTS_TABLE, {"account_id": account_id})
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to read account %s: %s", account_id, e)
            raise StoreUnavailable(f"account read failed: {e}") from e

        if not item:
            raise AccountNotFound(account_id)
        return Account.from_item(item)

    def update(self, account_id: str, field_updates: dict[str, Any]) -> Account:
        """Atomically apply a partial update to one account.

        Fields mapped to None are removed from the record. The write is
        conditional on the record still existing.

        Args:
            account_id: Account primary key
            field_updates: Billing fields to write

        Returns:
            The account as stored after the update

        Raises:
            ValueError: A field outside the billing subset was given
            AccountNotFound: The record no longer exists
            StoreUnavailable: The store could not be written
        """
        unknown = set(field_updates) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update non-billing fields: {sorted(unknown)}")

        set_fields: dict[str, Any] = {}
        remove_fields: list[str] = []
        for field, value in field_updates.items():
            if value is None:
                remove_fields.append(field)
            elif isinstance(value, Enum):
                set_fields[field] = value.value
            else:
                set_fields[field] = value

        update_expression, names, values = build_update_expression(set_fields, remove_fields)
        names["#pk"] = "account_id"

        try:
            attrs = self._db.update_item(
                self.ACCOUNTS_TABLE,
                {"account_id": account_id},
                update_expression,
                values or None,
                names,
                condition_expression="attribute_exists(#pk)",
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to update account %s: %s", account_id, e)
            raise StoreUnavailable(f"account update failed: {e}") from e

        if attrs is None:
            raise AccountNotFound(account_id)
        return Account.from_item(attrs)

    def put(self, account: Account) -> None:
        """Create or replace an account record (seeding and tests only).

        Raises:
            StoreUnavailable: The store could not be written
        """
        try:
            self._db.put_item(
                self.ACCOUNTS_TABLE,
                account.model_dump(mode="json", exclude_none=True),
            )
        except (ClientError, BotoCoreError) as e:
            raise StoreUnavailable(f"account write failed: {e}") from e
