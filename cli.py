import argparse
import asyncio
import csv
import json
import logging
import shutil
from typing import Optional

from db import SessionRepository, WeightEntryRepository, parse_timestamp, utc_now
from config import load_settings
from log_service import parse_body_weight
from seed_sample_data import seed
from session_service import format_elapsed
import requests
import time


async def export_history(db_path: str, fmt: str, out_path: str, limit: int = 50) -> int:
    sessions = SessionRepository(db_path)
    history = await sessions.fetch_history(limit)
    for item in history:
        item["logs"] = await sessions.fetch_logs(item["id"])
    with open(out_path, "w", encoding="utf-8", newline="") as f:
        if fmt == "json":
            json.dump(history, f, indent=2)
        else:
            writer = csv.writer(f)
            writer.writerow(
                ["session_id", "program", "start_time", "duration_minutes", "exercise", "weight", "reps", "notes"]
            )
            for item in history:
                for log in item["logs"]:
                    writer.writerow(
                        [
                            item["id"],
                            item["program_name"],
                            item["start_time"],
                            item["duration_minutes"],
                            log["exercise_name"],
                            log["weight"],
                            log["reps"],
                            log["notes"],
                        ]
                    )
    return len(history)


async def show_status(db_path: str) -> None:
    session = await SessionRepository(db_path).get_active()
    if session is None:
        print("No active workout")
        return
    started = parse_timestamp(session["start_time"])
    elapsed = int((utc_now() - started).total_seconds())
    print(f"{session['program_name']} running for {format_elapsed(elapsed)}")


async def show_history(db_path: str, limit: int) -> None:
    for item in await SessionRepository(db_path).fetch_history(limit):
        duration = f"{item['duration_minutes']} min" if item["duration_minutes"] else "-"
        print(f"{item['start_time'][:10]}  {item['program_name']:<24} {duration}")


async def log_weight(db_path: str, weight: str, date: Optional[str]) -> None:
    value = parse_body_weight(weight)
    await WeightEntryRepository(db_path).log(value, date)
    print(f"Logged {value} for {date or 'today'}")


def backup_db(db_path: str, backup_path: str) -> None:
    shutil.copy(db_path, backup_path)


def restore_db(backup_path: str, db_path: str) -> None:
    shutil.copy(backup_path, db_path)


def benchmark(url: str, runs: int = 10) -> None:
    times: list[float] = []
    for _ in range(runs):
        t0 = time.time()
        requests.get(f"{url}/health", timeout=5)
        times.append(time.time() - t0)
    avg = sum(times) / len(times)
    print(f"Average /health response time over {runs} runs: {avg:.4f}s")


def serve(yaml_path: str, db_path: Optional[str], host: str, port: int) -> None:
    import uvicorn
    from rest_api import WorkoutAPI

    api = WorkoutAPI(db_path=db_path, yaml_path=yaml_path)
    uvicorn.run(api.app, host=host, port=port)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Workout logbook commands")
    parser.add_argument("--config", default="settings.yaml")
    parser.add_argument("--db", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    srv = sub.add_parser("serve")
    srv.add_argument("--host", default="127.0.0.1")
    srv.add_argument("--port", type=int, default=8000)

    seed_cmd = sub.add_parser("seed")
    seed_cmd.add_argument("--weights", action="store_true")

    sub.add_parser("status")

    hist = sub.add_parser("history")
    hist.add_argument("--limit", type=int, default=None)

    exp = sub.add_parser("export")
    exp.add_argument("--fmt", choices=["csv", "json"], default="csv")
    exp.add_argument("--out", default="history.csv")

    bkp = sub.add_parser("backup")
    bkp.add_argument("--out", default="backup.db")

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", default="backup.db")

    wt = sub.add_parser("weight")
    wt.add_argument("weight")
    wt.add_argument("--date", default=None)

    bench = sub.add_parser("benchmark")
    bench.add_argument("--url", default="http://localhost:8000")
    bench.add_argument("--runs", type=int, default=10)

    args = parser.parse_args(argv)
    settings = load_settings(args.config, db_path=args.db)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    db_path = settings.db_path

    if args.cmd == "serve":
        serve(args.config, args.db, args.host, args.port)
    elif args.cmd == "seed":
        asyncio.run(seed(db_path, args.weights))
    elif args.cmd == "status":
        asyncio.run(show_status(db_path))
    elif args.cmd == "history":
        asyncio.run(show_history(db_path, args.limit or settings.history_limit))
    elif args.cmd == "export":
        count = asyncio.run(export_history(db_path, args.fmt, args.out, settings.history_limit))
        print(f"Exported {count} sessions to {args.out}")
    elif args.cmd == "backup":
        backup_db(db_path, args.out)
    elif args.cmd == "restore":
        restore_db(args.src, db_path)
    elif args.cmd == "weight":
        try:
            asyncio.run(log_weight(db_path, args.weight, args.date))
        except ValueError as e:
            parser.error(str(e))
    elif args.cmd == "benchmark":
        benchmark(args.url, args.runs)


if __name__ == "__main__":
    main()
