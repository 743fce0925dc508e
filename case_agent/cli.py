"""CLI entry point for the case-agent package."""

from __future__ import annotations

import logging
import os
import sys

MIN_PYTHON = (3, 10)


def _print_banner(provider: str, model: str, port: int) -> None:
    provider_note = "no API key required" if provider == "stub" else f"model {model}"
    base = f"http://localhost:{port}"
    print()
    print("✅ Case agent started")
    print("Provider: {} ({})".format(provider, provider_note))
    print()
    print("Docs:     {}/docs".format(base))
    print("Health:   {}/health".format(base))
    print("Tools:    {}/tools".format(base))
    print()
    if provider == "stub":
        print("To use the AI gateway, put these in .env and restart:")
        print()
        print("   PROVIDER=gateway")
        print("   AI_GATEWAY_API_KEY=YOUR_KEY_HERE")
        print()


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _ensure_supported_python() -> None:
    if sys.version_info < MIN_PYTHON:
        print(
            "Error: Python {} detected. case-agent requires Python {}.{}+.".format(
                _python_version_str(),
                MIN_PYTHON[0],
                MIN_PYTHON[1],
            ),
            file=sys.stderr,
        )
        sys.exit(2)


def _print_help() -> None:
    print("Case Agent CLI")
    print()
    print("Usage:")
    print("  case-agent                Start the agent server")
    print("  case-agent serve          Start the agent server")
    print("  case-agent init-db        Create database tables")
    print("  case-agent seed-demo      Insert a demo case and print its id")
    print()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _init_db() -> None:
    from .storage import db

    db.init_db()
    info = db.get_db_info()
    target = "DATABASE_URL" if info.dialect == "postgres" else info.db_path
    print(f"Database ready ({info.dialect}: {target})")


def _seed_demo() -> str:
    """Insert a demo case with related records; return the case id."""
    from .storage import case_store

    case_id = case_store.insert_case(
        {
            "client_name": "Anna Kowalska",
            "client_code": "PL-DEMO-001",
            "status": "active",
            "current_stage": "document_collection",
            "processing_mode": "standard",
            "country": "USA",
            "kpi_tasks_total": 2,
            "kpi_tasks_completed": 1,
            "kpi_docs_percentage": 40,
            "poa_approved": False,
        }
    )
    case_store.insert_intake(
        case_id,
        {
            "applicant_first_name": "Anna",
            "applicant_last_name": "Kowalska",
            "polish_ancestor": "great-grandfather",
            "emigration_year": 1912,
        },
    )
    case_store.insert_master_data(
        case_id,
        {
            "applicant_first_name": "Anna",
            "applicant_last_name": "Kowalska",
            "applicant_dob": "1985-03-14",
            "father_first_name": "Jan",
            "father_last_name": "Kowalski",
        },
    )
    case_store.insert_document(
        case_id,
        {"name": "passport.pdf", "type": "passport", "category": "identity", "person_type": "applicant"},
    )
    case_store.insert_document(
        case_id,
        {
            "name": "birth_certificate_1890.pdf",
            "type": "birth_certificate",
            "category": "civil_acts",
            "person_type": "great_grandfather",
            "needs_translation": True,
        },
    )
    case_store.insert_task(case_id, title="Collect parents' marriage certificate", priority="high")
    case_store.insert_task(case_id, title="Verify passport scan", priority="low", status="completed")
    case_store.insert_poa(case_id, "adult", None, status="draft")
    case_store.insert_wsc_letter(
        case_id,
        {"letter_date": "2026-09-01", "deadline": "2026-11-01", "reference_number": "WSC-0001"},
    )
    return case_id


def main() -> None:
    """Run the case agent server or handle init-db/seed-demo commands."""
    from .config import get_settings

    _ensure_supported_python()
    settings = get_settings()
    _configure_logging(settings.log_level)
    host = os.environ.get("HOST", "0.0.0.0")

    if len(sys.argv) > 1:
        subcommand = sys.argv[1].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "init-db":
            _init_db()
            sys.exit(0)
        if subcommand == "seed-demo":
            print(_seed_demo())
            sys.exit(0)
        if subcommand != "serve":
            print(f"Unknown command: {subcommand}", file=sys.stderr)
            _print_help()
            sys.exit(2)

    import uvicorn

    _print_banner(settings.provider_name, settings.ai_model, settings.http_port)

    uvicorn.run(
        "case_agent.main:app",
        host=host,
        port=settings.http_port,
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
