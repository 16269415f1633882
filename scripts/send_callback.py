"""Post a vendor-shaped STK callback to a running payment service.

Useful for exercising the callback -> status flow without a real M-Pesa
sandbox round-trip (e.g. duplicate or out-of-order delivery testing).
"""

import argparse
import json

import httpx


def build_callback(
    checkout_request_id: str,
    result_code: int,
    result_desc: str,
    amount: float | None,
    receipt: str | None,
    phone: str | None,
) -> dict:
    """Build a `Body.stkCallback` payload like the vendor sends."""

    stk: dict = {
        "MerchantRequestID": f"sim-{checkout_request_id}",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        items = []
        if amount is not None:
            items.append({"Name": "Amount", "Value": amount})
        if receipt:
            items.append({"Name": "MpesaReceiptNumber", "Value": receipt})
        if phone:
            items.append({"Name": "PhoneNumber", "Value": int(phone) if phone.isdigit() else phone})
        stk["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": stk}}


def main() -> None:
    """Parse CLI args and deliver one callback."""

    parser = argparse.ArgumentParser(description="Send a simulated STK callback.")
    parser.add_argument("--service-url", default="http://localhost:8000")
    parser.add_argument("--checkout-id", required=True)
    parser.add_argument("--result-code", type=int, default=0)
    parser.add_argument("--result-desc", default="The service request is processed successfully.")
    parser.add_argument("--amount", type=float, default=None)
    parser.add_argument("--receipt", default=None)
    parser.add_argument("--phone", default=None)
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same callback N times")
    args = parser.parse_args()

    payload = build_callback(
        args.checkout_id,
        args.result_code,
        args.result_desc,
        args.amount,
        args.receipt,
        args.phone,
    )
    for _ in range(max(1, args.repeat)):
        resp = httpx.post(f"{args.service_url}/payments/callback", json=payload, timeout=10.0)
        resp.raise_for_status()
        print(json.dumps(resp.json()))


if __name__ == "__main__":
    main()
