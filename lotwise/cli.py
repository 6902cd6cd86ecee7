from __future__ import annotations

import datetime as dt
import json
import logging
import os
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Iterator, Optional

import typer
from dotenv import load_dotenv
from pydantic import BaseModel

from lotwise.core.errors import LotwiseError, NoDataError
from lotwise.utils.money import to_decimal

app = typer.Typer(help="Lotwise tax-lot and tax-loss harvesting CLI")

EXIT_ERROR = 2
EXIT_NO_DATA = 3


@app.callback()
def main() -> None:
    load_dotenv()
    level = os.environ.get("LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(level=getattr(logging, level, logging.WARNING), format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _echo(result: Any) -> None:
    if isinstance(result, BaseModel):
        payload = result.model_dump(mode="json")
    elif isinstance(result, list):
        payload = [r.model_dump(mode="json") if isinstance(r, BaseModel) else r for r in result]
    else:
        payload = result
    typer.echo(json.dumps(payload, indent=2, default=str))


@contextmanager
def _engine() -> Iterator[tuple[Any, Any]]:
    from lotwise.core.config import get_or_create_harvest_config
    from lotwise.core.providers import EngineDeps
    from lotwise.db.session import get_session

    with get_session() as session:
        try:
            yield EngineDeps.from_session(session), get_or_create_harvest_config(session)
        except NoDataError as e:
            typer.echo(f"Nothing to analyze ({e.code}): {e}", err=True)
            raise typer.Exit(code=EXIT_NO_DATA)
        except LotwiseError as e:
            typer.echo(f"Error ({e.code}): {e}", err=True)
            raise typer.Exit(code=EXIT_ERROR)


def _parse_date(value: Optional[str]) -> Optional[dt.date]:
    if value is None:
        return None
    try:
        return dt.date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Expected YYYY-MM-DD, got {value!r}")


@app.command("init-db")
def init_db_cmd():
    load_dotenv()
    from lotwise.db.init_db import init_db

    init_db()
    typer.echo("Database initialized.")


@app.command("realized-gains")
def realized_gains_cmd(
    symbol_id: int = typer.Option(..., help="Security id"),
    tax_year: Optional[int] = typer.Option(None, help="Defaults to the current year"),
):
    from lotwise.core.service import calculate_realized_gains

    with _engine() as (deps, cfg):
        _echo(calculate_realized_gains(deps, symbol_id, tax_year, config=cfg))


@app.command("annual-summary")
def annual_summary_cmd(
    tax_year: int = typer.Option(...),
    account_id: Optional[int] = typer.Option(None),
):
    from lotwise.core.service import calculate_annual_summary

    with _engine() as (deps, cfg):
        _echo(calculate_annual_summary(deps, tax_year, account_id, config=cfg))


@app.command("unrealized-gains")
def unrealized_gains_cmd(
    symbol_id: Optional[int] = typer.Option(None),
    account_id: Optional[int] = typer.Option(None),
):
    from lotwise.core.service import calculate_unrealized_gains

    with _engine() as (deps, _cfg):
        _echo(calculate_unrealized_gains(deps, symbol_id, account_id))


@app.command("tax-lots")
def tax_lots_cmd(
    account_id: Optional[int] = typer.Option(None),
    as_of: Optional[str] = typer.Option(None, help="YYYY-MM-DD, defaults to today"),
):
    from lotwise.core.service import generate_tax_lot_report

    as_of_date = _parse_date(as_of)
    with _engine() as (deps, cfg):
        _echo(generate_tax_lot_report(deps, account_id, as_of_date, config=cfg))


@app.command("harvest")
def harvest_cmd(
    account_id: Optional[int] = typer.Option(None),
    loss_threshold: Optional[str] = typer.Option(None, help="Minimum loss in USD, e.g. 100.00"),
):
    from lotwise.core.service import identify_opportunities

    with _engine() as (deps, cfg):
        threshold = to_decimal(loss_threshold, field="loss_threshold") if loss_threshold is not None else None
        _echo(identify_opportunities(deps, account_id, threshold, config=cfg))


@app.command("wash-check")
def wash_check_cmd(
    sell: str = typer.Option(..., help="Ticker being sold"),
    buy: str = typer.Option(..., help="Replacement ticker"),
    date: str = typer.Option(..., help="YYYY-MM-DD"),
    account_id: Optional[int] = typer.Option(None),
):
    from lotwise.core.service import check_wash_sale_compliance

    txn_date = _parse_date(date)
    with _engine() as (deps, cfg):
        _echo(check_wash_sale_compliance(deps, sell, buy, txn_date, account_id, config=cfg))


@app.command("replacements")
def replacements_cmd(
    symbol: str = typer.Option(...),
    allocation_target: Optional[str] = typer.Option(None),
):
    from lotwise.core.service import recommend_replacements

    with _engine() as (deps, cfg):
        target = to_decimal(allocation_target, field="allocation_target") if allocation_target is not None else None
        _echo(recommend_replacements(deps, symbol, target, config=cfg))


@app.command("strategy")
def strategy_cmd(
    tax_rate: str = typer.Option(..., help="Marginal rate, e.g. 0.24"),
    targets: Optional[str] = typer.Option(None, help='JSON, e.g. {"EQUITY": "60", "BOND": "40"}'),
    account_id: Optional[int] = typer.Option(None),
):
    from lotwise.core.service import optimize_harvest_strategy

    raw: dict[str, Any] = {}
    if targets:
        try:
            raw = json.loads(targets, parse_float=Decimal)
        except json.JSONDecodeError as e:
            raise typer.BadParameter(f"targets is not valid JSON: {e}")
        if not isinstance(raw, dict):
            raise typer.BadParameter("targets must be a JSON object of asset class -> percent")
    with _engine() as (deps, cfg):
        portfolio_targets = {str(k): to_decimal(v, field=f"targets[{k}]") for k, v in raw.items()}
        rate = to_decimal(tax_rate, field="tax_rate")
        _echo(optimize_harvest_strategy(deps, portfolio_targets, rate, account_id=account_id, config=cfg))


if __name__ == "__main__":
    app()
