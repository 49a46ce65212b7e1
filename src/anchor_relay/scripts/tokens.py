# src/anchor_relay/scripts/tokens.py
"""
Create relay operators and print access tokens for them.

Typical usage:
  python -m anchor_relay.scripts.tokens 0xAbC... --role admin --name "Ops"
"""

from __future__ import annotations

import argparse
import sys

from sqlalchemy import select
from sqlalchemy.orm import Session

from anchor_relay.core.security import create_access_token
from anchor_relay.db.session import SessionLocal
from anchor_relay.models import Operator
from anchor_relay.models.operator import OPERATOR_ROLES, ROLE_VIEWER


def get_or_create_operator(
    db: Session,
    wallet_address: str,
    role: str = ROLE_VIEWER,
    display_name: str | None = None,
) -> Operator:
    """Return the operator for ``wallet_address``, creating it if needed.

    An existing operator keeps its id; its role and name are updated.
    """
    if role not in OPERATOR_ROLES:
        raise ValueError(f"Unknown role {role!r}; expected one of {', '.join(OPERATOR_ROLES)}")

    address = wallet_address.lower()
    operator = db.execute(
        select(Operator).where(Operator.wallet_address == address)
    ).scalar_one_or_none()
    if operator is None:
        operator = Operator(wallet_address=address, role=role, display_name=display_name)
        db.add(operator)
    else:
        operator.role = role
        if display_name is not None:
            operator.display_name = display_name
    db.commit()
    db.refresh(operator)
    return operator


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Issue an access token for a relay operator")
    parser.add_argument("wallet_address", help="Operator wallet address (0x...)")
    parser.add_argument("--role", choices=OPERATOR_ROLES, default=ROLE_VIEWER)
    parser.add_argument("--name", dest="display_name", default=None)
    parser.add_argument(
        "--expires-minutes",
        type=int,
        default=None,
        help="Token lifetime (defaults to ACCESS_TOKEN_EXPIRE_MINUTES)",
    )
    args = parser.parse_args(argv)

    with SessionLocal() as db:
        try:
            operator = get_or_create_operator(
                db, args.wallet_address, args.role, args.display_name
            )
        except ValueError as exc:
            print(f"[tokens] ERROR: {exc}", file=sys.stderr)
            return 1
        token = create_access_token(operator.id, expires_minutes=args.expires_minutes)
        print(f"[tokens] operator {operator.id} ({operator.role})", file=sys.stderr)

    print(token)
    return 0


if __name__ == "__main__":
    sys.exit(main())
