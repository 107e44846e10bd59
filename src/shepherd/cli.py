"""Command line interface for shepherd."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .config import Strategy, load_settings, with_overrides
from .errors import ShepherdError
from .logging_utils import setup_logger
from .service import load_job_file, run_job
from .validation import validate_parameters

logger = logging.getLogger("shepherd.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shepherd",
        description="下載 GCS 輸入檔、執行指令，並將新產生的檔案上傳回 GCS",
    )
    parser.add_argument("--config", help="YAML 設定檔路徑")
    parser.add_argument("--log-level", default="INFO", help="log 等級（預設 INFO）")
    parser.add_argument("--log-file", help="另外以 JSON 格式寫入 log 檔")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="執行 job 描述檔")
    run_parser.add_argument("job_file", help="job 描述檔（JSON）")
    run_parser.add_argument(
        "-s",
        "--strategy",
        choices=[item.value for item in Strategy],
        help="輸入檔取得方式：download 或 gcsfuse",
    )
    run_parser.add_argument("--jobs-dir", help="建立 tmp-work-* 工作根目錄的位置")
    run_parser.add_argument("--cleanup", action="store_true", help="完成後刪除工作根目錄")

    validate_parser = subparsers.add_parser("validate", help="只檢查 job 描述檔")
    validate_parser.add_argument("job_file", help="job 描述檔（JSON）")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logger(args.log_level.upper(), Path(args.log_file) if args.log_file else None)

    try:
        params = load_job_file(Path(args.job_file))
        if args.command == "validate":
            validate_parameters(params)
            print(f"job 描述檔合法：{args.job_file}")
            return 0

        settings = load_settings(Path(args.config).expanduser() if args.config else None)
        settings = with_overrides(
            settings,
            strategy=args.strategy,
            jobs_dir=Path(args.jobs_dir).expanduser() if args.jobs_dir else None,
            keep_work_dir=False if args.cleanup else None,
        )
        result = run_job(params, settings)
    except ShepherdError as exc:
        logger.error("job 執行失敗：%s", exc)
        print(f"錯誤：{exc}", file=sys.stderr)
        return 1

    print(f"exit_code={result.exit_code} uploads={len(result.uploads)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
