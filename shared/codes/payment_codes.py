"""
Payment specific codes and M-Pesa (Daraja) protocol constants.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    NETWORK_ERROR = 60001
    DECLINED = 60002
    TIMEOUT = 60003
    CREDENTIAL_ERROR = 60004
    CONFIG_ERROR = 60005


# Daraja base URLs per environment
MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

MPESA_TOKEN_PATH = "/oauth/v1/generate"
MPESA_STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
MPESA_STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

MPESA_TRANSACTION_TYPE = "CustomerPayBillOnline"

# STK query answers with HTTP 500 and this errorCode while the payer has not responded yet
MPESA_QUERY_IN_PROGRESS_CODES = frozenset({"500.001.1001"})

# Callback metadata item carrying the receipt
MPESA_RECEIPT_ITEM = "MpesaReceiptNumber"

# Acknowledgments expected by the provider on the callback URL
MPESA_CALLBACK_ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}
MPESA_CALLBACK_FAILED = {"ResultCode": 1, "ResultDesc": "Failed"}
