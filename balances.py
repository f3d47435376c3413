from decimal import Decimal

from models import Account, TransactionType


def signed_amount(txn_type: TransactionType, amount: Decimal) -> Decimal:
    if txn_type == TransactionType.income:
        return amount
    return -amount


def apply_transaction(
    account: Account, txn_type: TransactionType, amount: Decimal
) -> None:
    account.balance = account.balance + signed_amount(txn_type, amount)


def revert_transaction(
    account: Account, txn_type: TransactionType, amount: Decimal
) -> None:
    account.balance = account.balance - signed_amount(txn_type, amount)
