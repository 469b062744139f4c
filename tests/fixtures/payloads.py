def make_notification(
    tx_ref: str = "TX1",
    status: str = "success",
    **overrides,
) -> dict:
    """Build a processor webhook body."""
    payload = {
        "tx_ref": tx_ref,
        "status": status,
        "event_type": "checkout.payment",
        "amount": 100,
        "currency": "MWK",
    }
    payload.update(overrides)
    return payload


def make_verification_response(
    tx_ref: str = "TX1",
    status: str = "success",
    data_status: str = "success",
    amount: int = 100,
    currency: str = "MWK",
    **data_overrides,
) -> dict:
    """Build a verify-payment API response body."""
    data = {
        "tx_ref": tx_ref,
        "status": data_status,
        "amount": amount,
        "currency": currency,
        "customer": {
            "email": "test@example.com",
            "first_name": "Test",
            "last_name": "User",
        },
    }
    data.update(data_overrides)
    return {
        "status": status,
        "message": "Payment details retrieved successfully.",
        "data": data,
    }
