# scripts/mint_token.py
import argparse  # parse CLI args
import os  # read environment variables

from venue_ledger.security import mint_scan_token  # signs with nonce + exp (pip install -e . first)


def main() -> None:  # main entrypoint
    parser = argparse.ArgumentParser(description="Mint a signed scan token")  # CLI parser
    target = parser.add_mutually_exclusive_group(required=True)  # exactly one thing to scan
    target.add_argument("--pass-id")  # line-skip pass
    target.add_argument("--purchase-id")  # package purchase
    target.add_argument("--promo-code")  # promo
    target.add_argument("--booking-ref")  # booking reference
    parser.add_argument("--venue-id")  # optional venue pin
    parser.add_argument("--ttl-minutes", type=int, default=60 * 24)  # token lifetime
    args = parser.parse_args()  # parse args

    secret = os.environ.get("SCAN_TOKEN_SECRET", "dev_secret_change_me")  # signing secret

    payload = {  # claims matched by the resolver
        "passId": args.pass_id,
        "purchaseId": args.purchase_id,
        "promoCode": args.promo_code,
        "bookingRef": args.booking_ref,
        "venueId": args.venue_id,
    }
    payload = {k: v for k, v in payload.items() if v}  # drop unset keys; the shapes forbid extras

    print(mint_scan_token(payload, secret, ttl_minutes=args.ttl_minutes))  # output token to stdout


if __name__ == "__main__":  # run as script
    main()  # call main
