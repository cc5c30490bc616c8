from __future__ import annotations

import argparse
import json
import logging
import os
import time
import uuid
from dataclasses import asdict
from typing import List, Optional

from scrapeguard.client import HttpMetricsApiClient, MetricsApiClient, MockMetricsApiClient
from scrapeguard.config import ScrapingConfig, get_preset, load_api_settings, load_config_from_env, validate_config
from scrapeguard.logging_utils import configure_logging
from scrapeguard.manager import SessionManager
from scrapeguard.models import Account, SessionAction, SessionType
from scrapeguard.storage import JsonlEventLog

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_LIST_PATH = "accounts.txt"


def _load_accounts(path: str, limit: int = 100) -> List[Account]:
    """One username per line; a trailing ",owned" marks an owned account."""
    accounts: List[Account] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            username, _, flag = line.partition(",")
            accounts.append(
                Account(
                    account_id=username.strip(),
                    username=username.strip(),
                    is_owned=flag.strip().lower() == "owned",
                )
            )
            if len(accounts) >= limit:
                break
    if not accounts:
        raise ValueError(f"No accounts found in {path}")
    return accounts


def _demo_accounts(count: int) -> List[Account]:
    return [
        Account(account_id=f"acct-{i}", username=f"demo_user_{i}", is_owned=i % 3 == 0)
        for i in range(count)
    ]


def _build_config(preset: str) -> ScrapingConfig:
    config = load_config_from_env(get_preset(preset))
    validation = validate_config(config)
    for warning in validation.warnings:
        logger.warning("config warning: %s", warning)
    if not validation.is_valid:
        raise SystemExit("Invalid configuration: " + "; ".join(validation.errors))
    return config


def _build_client(config: ScrapingConfig, mock: bool, failure_rate: float) -> MetricsApiClient:
    if mock:
        return MockMetricsApiClient(failure_rate=failure_rate, seed=42, reduced_data=config.use_reduced_data)
    settings = load_api_settings()
    if not settings.api_key:
        raise SystemExit("SCRAPEGUARD_API_KEY is not set; use --mock for an offline run")
    return HttpMetricsApiClient(settings, reduced_data=config.use_reduced_data)


def run_demo(
    preset: str,
    accounts_path: Optional[str],
    account_limit: int,
    session_type: str,
    results_path: str,
    mock: bool,
    failure_rate: float,
    force: bool,
) -> None:
    config = _build_config(preset)
    client = _build_client(config, mock, failure_rate)
    event_log = JsonlEventLog(results_path)
    manager = SessionManager(config, client, event_log=event_log)

    if accounts_path and os.path.exists(accounts_path):
        accounts = _load_accounts(accounts_path, limit=account_limit)
    else:
        accounts = _demo_accounts(account_limit)

    analysis = manager.cost_optimizer.analyze_costs(len(accounts))
    print(json.dumps({"cost_analysis": asdict(analysis)}, ensure_ascii=False))

    session = manager.create_session(SessionType(session_type.upper()), accounts, triggered_by="cli", trigger_source="CLI")
    result = manager.control(session.session_id, SessionAction.START, force=force)
    print(json.dumps(result.to_dict(), ensure_ascii=False))

    while not manager.pool.wait_idle(timeout=5.0):
        current = manager.get_session(session.session_id)
        print(
            f"session={current.session_id} status={current.status.value} progress={current.progress}% "
            f"completed={current.completed_accounts} failed={current.failed_accounts} skipped={current.skipped_accounts}"
        )

    final = manager.get_session(session.session_id)
    print(json.dumps(final.to_dict(), ensure_ascii=False, indent=2))
    print(json.dumps(manager.system_analytics(), ensure_ascii=False, indent=2))
    manager.close()

    print(
        f"\nDONE: status={final.status.value} completed={final.completed_accounts} "
        f"failed={final.failed_accounts} skipped={final.skipped_accounts} cost={final.estimated_cost:.4f}"
    )


def run_preflight(preset: str, accounts_path: Optional[str], account_limit: int, session_type: str) -> None:
    config = _build_config(preset)
    manager = SessionManager(config, MockMetricsApiClient(), autorun=False)
    if accounts_path and os.path.exists(accounts_path):
        accounts = _load_accounts(accounts_path, limit=account_limit)
    else:
        accounts = _demo_accounts(account_limit)
    risk = manager.preflight(accounts, SessionType(session_type.upper()))
    print(json.dumps(risk.to_dict(), ensure_ascii=False, indent=2))
    manager.close()


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--run-demo", action="store_true", help="Create and run one scraping session")
    parser.add_argument("--preflight", action="store_true", help="Print the pre-flight risk assessment and exit")
    parser.add_argument("--validate-config", action="store_true", help="Validate the selected preset and exit")

    parser.add_argument("--preset", default=os.environ.get("SCRAPEGUARD_PRESET", "test"),
                        choices=["test", "small", "production", "enterprise"], help="Configuration preset")
    parser.add_argument("--accounts", default=DEFAULT_ACCOUNT_LIST_PATH, help="Path to account list (accounts.txt)")
    parser.add_argument("--limit", type=int, default=10, help="Max number of accounts to load")
    parser.add_argument("--session-type", default="METRICS", choices=[t.value for t in SessionType])
    parser.add_argument("--results", default=f"events-{uuid.uuid4().hex[:8]}.jsonl", help="Output JSONL event log")

    parser.add_argument("--mock", action="store_true", help="Use the offline mock API client")
    parser.add_argument("--failure-rate", type=float, default=0.2, help="Mock client failure probability")
    parser.add_argument("--force", action="store_true", help="Proceed with reduced accounts on HIGH/EXTREME risk")
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args()
    configure_logging(args.log_level)

    if args.validate_config:
        validation = validate_config(load_config_from_env(get_preset(args.preset)))
        print(json.dumps(asdict(validation), ensure_ascii=False, indent=2))
        return

    if args.preflight:
        run_preflight(args.preset, args.accounts, args.limit, args.session_type)
        return

    if args.run_demo:
        started = time.time()
        run_demo(
            preset=args.preset,
            accounts_path=args.accounts,
            account_limit=args.limit,
            session_type=args.session_type,
            results_path=args.results,
            mock=args.mock,
            failure_rate=args.failure_rate,
            force=args.force,
        )
        print(f"elapsed={time.time() - started:.1f}s")
        return

    print("Nothing to do. Use --run-demo, --preflight or --validate-config.")


if __name__ == "__main__":
    main()
