#!/usr/bin/env python3
"""
账本对账：逐个账户重放 token_ledger，检查 balanceAfter 与 token_account.balance 是否一致
用于上线后定期巡检，发现不一致时以非零状态码退出
"""

import sys

from adledger.core.database import SessionLocal
from adledger.services.tokens import find_ledger_mismatches


def main() -> int:
    db = SessionLocal()
    try:
        mismatches = find_ledger_mismatches(db)
    finally:
        db.close()

    if not mismatches:
        print('✓ 所有账户账本一致')
        return 0

    print(f'⚠️  {len(mismatches)} 个账户账本不一致:\n')
    for user_id, exc in mismatches:
        print(f'  {user_id}: {exc.message} {exc.details}')
    return 1


if __name__ == '__main__':
    sys.exit(main())
