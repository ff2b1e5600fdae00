#!/usr/bin/env python3
"""
Create (or rotate the token of) a POS device and print its credentials.

    DATABASE_URL=postgresql://... python -m backend.scripts.register_device --code REG-01

The token is shown once; only its sha256 hash is stored.
"""
import argparse
import json
import os
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.security import generate_device_token, hash_device_token


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--code", required=True, help="Human-readable device code, e.g. REG-01")
    parser.add_argument("--rotate", action="store_true", help="Issue a new token if the device already exists")
    args = parser.parse_args()

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("register_device: missing DATABASE_URL", file=sys.stderr)
        return 2

    code = args.code.strip()
    if not code:
        print("register_device: --code is empty", file=sys.stderr)
        return 2

    token = generate_device_token()
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM pos_devices WHERE device_code = %s", (code,))
                row = cur.fetchone()
                if row and not args.rotate:
                    print(f"register_device: device {code} already exists (use --rotate)", file=sys.stderr)
                    return 1
                if row:
                    cur.execute(
                        """
                        UPDATE pos_devices
                        SET device_token_hash = %s, is_active = true
                        WHERE id = %s
                        RETURNING id
                        """,
                        (hash_device_token(token), row["id"]),
                    )
                else:
                    cur.execute(
                        """
                        INSERT INTO pos_devices (id, device_code, device_token_hash)
                        VALUES (gen_random_uuid(), %s, %s)
                        RETURNING id
                        """,
                        (code, hash_device_token(token)),
                    )
                device_id = cur.fetchone()["id"]

    print(json.dumps({"device_id": str(device_id), "device_code": code, "device_token": token}, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
