# -----------------------------------------------------------------------------
# 📂 backend/trustledger/errors.py - ledger error kinds
# -----------------------------------------------------------------------------
# Every failure the core can report is a LedgerError subclass carrying:
#   • code         - stable machine-readable string for clients;
#   • status_code  - HTTP status the adapter (routes.py) answers with.
#
# Kinds:
#   • validation     (400) - rejected synchronously, never retried;
#   • business rule  (402/403/409) - the enclosing transaction is rolled back;
#   • not found      (404);
#   • chain          (422) - the submitted transaction cannot be credited;
#   • transient      (502) - RPC failure, retryable.
#
# Idempotent repeats (duplicate deposit, duplicate action id, double refund)
# are NOT errors and have no class here.
# -----------------------------------------------------------------------------

from __future__ import annotations


class LedgerError(Exception):
    code = "LEDGER_ERROR"
    status_code = 400

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details


# -------------------------- validation --------------------------------------

class InvalidAmount(LedgerError):
    code = "INVALID_AMOUNT"


class InvalidAddress(LedgerError):
    code = "INVALID_ADDRESS"


class InvalidTxHash(LedgerError):
    code = "INVALID_TX_HASH"


class InvalidActionId(LedgerError):
    code = "INVALID_ACTION_ID"


class InvalidTicketRequest(LedgerError):
    code = "INVALID_TICKET_REQUEST"


class InvalidRole(LedgerError):
    code = "INVALID_ROLE"


# -------------------------- business rules ----------------------------------

class InsufficientBalance(LedgerError):
    code = "INSUFFICIENT_BALANCE"
    status_code = 402


class InsufficientRevenue(LedgerError):
    code = "INSUFFICIENT_REVENUE"
    status_code = 402


class TicketExpired(LedgerError):
    code = "TICKET_EXPIRED"
    status_code = 403


class TicketExhausted(LedgerError):
    code = "TICKET_EXHAUSTED"
    status_code = 403


class OwnershipMismatch(LedgerError):
    code = "OWNERSHIP_MISMATCH"
    status_code = 403


class ActionOwnershipError(LedgerError):
    code = "ACTION_NOT_OWNED"
    status_code = 403


class ActionAlreadyRefunded(LedgerError):
    code = "ACTION_ALREADY_REFUNDED"
    status_code = 409


# -------------------------- not found ---------------------------------------

class TicketNotFound(LedgerError):
    code = "TICKET_NOT_FOUND"
    status_code = 404


class ActionNotFound(LedgerError):
    code = "ACTION_NOT_FOUND"
    status_code = 404


class TxNotFound(LedgerError):
    code = "TX_NOT_FOUND"
    status_code = 404


# -------------------------- chain -------------------------------------------

class TxFailed(LedgerError):
    code = "TX_FAILED"
    status_code = 422


class NoDepositEvent(LedgerError):
    code = "NO_DEPOSIT_EVENT"
    status_code = 422


class ChainRpcError(LedgerError):
    code = "CHAIN_RPC_ERROR"
    status_code = 502
