"""
コマンドラインインターフェース - 集計・保存・CSV入出力・クラウド同期
"""

import argparse
import asyncio
import getpass
import os
import sys
from pathlib import Path
from typing import Iterable, List, Optional

from .config.app_config import AppConfig, ConfigManager
from .core.calculator import BagInput, calculate_results, convert_to_hours, generate_markdown_table
from .core.models import Entry, Store, format_count, utc_now_iso
from .layers.interchange_layer.csv_codec import (
    import_all,
    serialize_all,
    serialize_tsv_all,
    serialize_tsv_row,
)
from .layers.storage_layer.local_store import LocalStore
from .layers.sync_layer.cloud_sync import CloudSyncOrchestrator, SyncResult
from .layers.sync_layer.merge_engine import merge_import
from .layers.sync_layer.remote_store import FirestoreRemoteStore, RemoteDocumentStore
from .utils.enhanced_logger import setup_logging

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def parse_bag(text: str) -> BagInput:
    """COUNTxWEIGHT[:TYPE] 形式の袋指定をパース"""
    bag_spec, _, bag_type = text.partition(':')
    count_text, sep, weight_text = bag_spec.lower().partition('x')
    if not sep:
        raise argparse.ArgumentTypeError(f"bag must be COUNTxWEIGHT[:TYPE], got '{text}'")
    try:
        count = float(count_text)
        weight = float(weight_text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"bag count and weight must be numbers, got '{text}'")
    if count < 0 or weight < 0:
        raise argparse.ArgumentTypeError(f"bag count and weight must not be negative, got '{text}'")
    return BagInput(count=count, weight=weight, bag_type=bag_type.strip() or None)


def _positive_number(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{text}' is not a number")
    if not value > 0 or value == float('inf'):
        raise argparse.ArgumentTypeError(f"'{text}' must be a positive number")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="volunteer-tracker",
        description="Volunteer results calculator with CSV export/import and cloud sync",
    )
    parser.add_argument("--config-dir", default="config", help="設定ディレクトリ")
    parser.add_argument("--db", help="ローカルストアのSQLiteファイル(設定より優先)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="ログレベル")

    subparsers = parser.add_subparsers(dest="command", required=True)

    calc = subparsers.add_parser("calc", help="集計結果を計算して表示")
    calc.add_argument("--group", required=True, help="ボランティアグループ名")
    calc.add_argument("--volunteers", required=True, type=_positive_number, help="人数")
    calc.add_argument("--duration", required=True, type=_positive_number, help="作業時間")
    calc.add_argument("--unit", choices=["hours", "minutes"], default="hours", help="作業時間の単位")
    calc.add_argument("--bag", action="append", required=True, type=parse_bag,
                      help="袋の指定 COUNTxWEIGHT[:TYPE] (複数指定可)")
    calc.add_argument("--save", action="store_true", help="ローカルストアに保存")
    calc.add_argument("--format", choices=["markdown", "tsv"], default="markdown", help="出力形式")

    subparsers.add_parser("groups", help="グループ一覧")

    show = subparsers.add_parser("show", help="グループのエントリー一覧")
    show.add_argument("group")

    delete = subparsers.add_parser("delete", help="エントリー削除")
    delete.add_argument("group")
    delete.add_argument("entry_id")

    export_csv = subparsers.add_parser("export-csv", help="CSVエクスポート")
    export_csv.add_argument("--group", help="対象グループ(未指定時は全グループ)")
    export_csv.add_argument("--output", "-o", help="出力ファイル(未指定時は標準出力)")

    import_csv = subparsers.add_parser("import-csv", help="CSVインポート(重複はスキップ)")
    import_csv.add_argument("file")
    import_csv.add_argument("--replace", action="store_true", help="マージせずに全データを置き換える")

    export_tsv = subparsers.add_parser("export-tsv", help="TSV出力(クリップボード貼り付け用)")
    export_tsv.add_argument("--group", help="対象グループ(未指定時は全グループ)")
    export_tsv.add_argument("--no-header", action="store_true", help="ヘッダー行を出力しない")

    clear = subparsers.add_parser("clear", help="ローカルデータを全削除")
    clear.add_argument("--yes", action="store_true", help="確認なしで削除")

    sync = subparsers.add_parser("sync", help="クラウド同期")
    sync.add_argument("--email", default=os.getenv("VOLUNTEER_TRACKER_EMAIL"), help="アカウントのメールアドレス")
    sync.add_argument("--password", default=os.getenv("VOLUNTEER_TRACKER_PASSWORD"),
                      help="パスワード(未指定時は入力を求める)")
    sync.add_argument("--sign-up", action="store_true", help="アカウントを新規作成")
    sync.add_argument("--upload", action="store_true", help="同期後にローカルデータをアップロード")
    sync.add_argument("--watch", type=float, metavar="SECONDS", help="指定秒数だけ変更を購読")

    subparsers.add_parser("init-config", help="設定ファイルのテンプレートを作成")

    return parser


def _load_config(args: argparse.Namespace) -> AppConfig:
    config = ConfigManager(args.config_dir).load_config()
    if args.db:
        config.storage.database_path = args.db
    if args.log_level:
        config.logging.level = args.log_level
    setup_logging(config.logging.to_dict())
    return config


def _open_store(config: AppConfig) -> LocalStore:
    return LocalStore(config.storage.database_path, config.storage.storage_key)


def _select_entries(store: LocalStore, group: Optional[str]) -> List[Entry]:
    if group:
        return store.get_group(group)
    return [entry for entries in store.get_all().values() for entry in entries]


# ----------------------------------------------------------------------
# サブコマンド
# ----------------------------------------------------------------------

def cmd_calc(args: argparse.Namespace, config: AppConfig) -> int:
    if not args.group.strip():
        print("Group name is required", file=sys.stderr)
        return EXIT_USAGE

    duration_hours = convert_to_hours(args.duration, args.unit)
    entry = calculate_results(args.group, args.volunteers, duration_hours, args.bag)

    if args.save:
        store = _open_store(config)
        if not store.save(entry):
            print("Failed to save entry", file=sys.stderr)
            return EXIT_FAILURE
        # 採番済みの保存エントリーを表示する
        entry = store.get_group(entry.bucket_key)[-1]
        print(f"Saved to group '{entry.bucket_key}'", file=sys.stderr)
    else:
        entry = entry.with_identity("", utc_now_iso())

    if args.format == "tsv":
        print(serialize_tsv_row(entry))
    else:
        print(generate_markdown_table(entry), end="")
    return EXIT_OK


def cmd_groups(args: argparse.Namespace, config: AppConfig) -> int:
    store = _open_store(config)
    data = store.get_all()
    for name in store.get_group_names():
        print(f"{name}\t{len(data[name])}")
    return EXIT_OK


def cmd_show(args: argparse.Namespace, config: AppConfig) -> int:
    entries = _open_store(config).get_group(args.group)
    if not entries:
        print(f"No entries for group '{args.group}'", file=sys.stderr)
        return EXIT_FAILURE

    for entry in entries:
        print(f"{entry.id}\t{entry.timestamp}\t{format_count(entry.num_volunteers)} volunteers\t"
              f"{entry.duration_hours:.2f} h\t{entry.total_pounds:.2f} lbs")
    return EXIT_OK


def cmd_delete(args: argparse.Namespace, config: AppConfig) -> int:
    if not _open_store(config).delete_entry(args.group, args.entry_id):
        print(f"Entry '{args.entry_id}' not found in group '{args.group}'", file=sys.stderr)
        return EXIT_FAILURE
    print(f"Deleted {args.entry_id}")
    return EXIT_OK


def cmd_export_csv(args: argparse.Namespace, config: AppConfig) -> int:
    text = serialize_all(_select_entries(_open_store(config), args.group))
    if args.output:
        with open(args.output, 'w', encoding='utf-8', newline='') as f:
            f.write(text + "\n")
        print(f"Exported to {args.output}", file=sys.stderr)
    else:
        print(text)
    return EXIT_OK


def cmd_import_csv(args: argparse.Namespace, config: AppConfig) -> int:
    try:
        # Excel等のBOM付きUTF-8も受け付ける
        text = Path(args.file).read_text(encoding='utf-8-sig')
    except (OSError, UnicodeDecodeError) as e:
        print(f"Cannot read {args.file}: {e}", file=sys.stderr)
        return EXIT_FAILURE

    result = import_all(text)
    if not result.success:
        print(result.error, file=sys.stderr)
        return EXIT_FAILURE
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)

    store = _open_store(config)
    if args.replace:
        written = store.import_all(result.store)
        added, skipped = result.entry_count, 0
    else:
        added = skipped = 0

        def merge(existing: Store) -> Store:
            nonlocal added, skipped
            merged = merge_import(existing, result.store)
            added, skipped = merged.added_count, merged.skipped_count
            return merged.merged

        written = store.update(merge) is not None

    if not written:
        print("Failed to write imported data", file=sys.stderr)
        return EXIT_FAILURE

    print(f"Imported {added} entries ({skipped} duplicates skipped)")
    return EXIT_OK


def cmd_export_tsv(args: argparse.Namespace, config: AppConfig) -> int:
    entries = _select_entries(_open_store(config), args.group)
    print(serialize_tsv_all(entries, include_header=not args.no_header))
    return EXIT_OK


def cmd_clear(args: argparse.Namespace, config: AppConfig) -> int:
    if not args.yes:
        print("Refusing to clear without --yes", file=sys.stderr)
        return EXIT_USAGE
    if not _open_store(config).clear():
        return EXIT_FAILURE
    print("Local data cleared")
    return EXIT_OK


def _print_result(result: SyncResult):
    stream = sys.stdout if result.is_successful() else sys.stderr
    print(result.summary(), file=stream)


async def run_sync(orchestrator: CloudSyncOrchestrator,
                   email: str,
                   password: str,
                   sign_up: bool = False,
                   upload: bool = False,
                   watch_seconds: Optional[float] = None) -> int:
    """サインイン → 初回同期 → (アップロード) → (購読) → サインアウト"""
    try:
        if sign_up:
            result = await orchestrator.sign_up(email, password)
        else:
            result = await orchestrator.sign_in(email, password)
        _print_result(result)
        if not result.is_successful():
            return EXIT_FAILURE

        if upload:
            result = await orchestrator.sync_to_cloud()
            _print_result(result)
            if not result.is_successful():
                return EXIT_FAILURE

        if watch_seconds:
            await asyncio.sleep(watch_seconds)
            if orchestrator.last_error:
                print(orchestrator.last_error, file=sys.stderr)
                return EXIT_FAILURE

        return EXIT_OK
    finally:
        await orchestrator.sign_out()


def cmd_sync(args: argparse.Namespace, config: AppConfig,
             remote: Optional[RemoteDocumentStore] = None) -> int:
    if remote is None:
        if not config.cloud_sync.is_configured():
            print("Cloud sync is not configured (set FIREBASE_API_KEY and FIREBASE_PROJECT_ID)",
                  file=sys.stderr)
            return EXIT_FAILURE
        remote = FirestoreRemoteStore(
            api_key=config.cloud_sync.api_key,
            project_id=config.cloud_sync.project_id,
            poll_interval=config.cloud_sync.poll_interval_seconds,
            request_timeout=config.cloud_sync.request_timeout_seconds,
        )

    if not args.email:
        print("--email is required", file=sys.stderr)
        return EXIT_USAGE
    password = args.password or getpass.getpass("Password: ")

    def on_refresh():
        print("Local data updated from cloud", file=sys.stderr)

    orchestrator = CloudSyncOrchestrator(
        local_store=_open_store(config),
        remote=remote,
        on_refresh=on_refresh,
        writer=config.cloud_sync.writer,
    )
    return asyncio.run(run_sync(orchestrator, args.email, password,
                                sign_up=args.sign_up, upload=args.upload,
                                watch_seconds=args.watch))


def cmd_init_config(args: argparse.Namespace, config: AppConfig) -> int:
    created = ConfigManager(args.config_dir).save_config_template()
    for filename in created:
        print(f"Created {Path(args.config_dir) / filename}")
    if not created:
        print("Config files already exist")
    return EXIT_OK


COMMANDS = {
    "calc": cmd_calc,
    "groups": cmd_groups,
    "show": cmd_show,
    "delete": cmd_delete,
    "export-csv": cmd_export_csv,
    "import-csv": cmd_import_csv,
    "export-tsv": cmd_export_tsv,
    "clear": cmd_clear,
    "sync": cmd_sync,
    "init-config": cmd_init_config,
}


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    config = _load_config(args)
    return COMMANDS[args.command](args, config)


if __name__ == "__main__":
    sys.exit(main())
