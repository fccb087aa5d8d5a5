"""
Run one payment reconciliation sweep from the command line.

Usage:
    python scripts/reconcile_payments.py                  # sweep stale pending payments
    python scripts/reconcile_payments.py <transaction_id> # query one transaction now
"""

import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging

from config import Settings
from database.db import create_db_engine, create_session_factory
from services.exceptions import PaymentError
from services.mpesa import MpesaConfig, MPesaService
from services.reconciliation_service import ReconciliationService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def main(argv):
    settings = Settings.from_env()
    gateway = MPesaService(MpesaConfig.from_env())
    session_factory = create_session_factory(create_db_engine(settings.database_url))

    db = session_factory()
    try:
        service = ReconciliationService.from_settings(db, gateway, settings)

        if argv:
            status = service.reconcile_transaction(argv[0])
            print(f"\n✅ Transaction {status['transactionId']}: {status['status']}")
            if status["errorMessage"]:
                print(f"   Reason: {status['errorMessage']}")
            return 0

        report = service.sweep()
        print("\n✅ Reconciliation sweep finished")
        for key, value in report.to_dict().items():
            print(f"  - {key}: {value}")
        return 1 if report.errors else 0
    except PaymentError as e:
        print(f"\n❌ {e.message}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
