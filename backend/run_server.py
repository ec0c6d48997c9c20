# run_server.py
import sys

import uvicorn

SERVICES = {
    "payments": ("billing.payments_main:app", 3001),
    "subscriptions": ("billing.subscriptions_main:app", 3000),
}

if __name__ == "__main__":
    name = sys.argv[1] if len(sys.argv) > 1 else "payments"
    if name not in SERVICES:
        sys.exit(f"usage: run_server.py [{'|'.join(SERVICES)}]")
    target, port = SERVICES[name]
    uvicorn.run(
        target,
        host="127.0.0.1",
        port=port,
        log_level="info",
    )
