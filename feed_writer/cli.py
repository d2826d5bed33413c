"""
CLI: Command Line Interface for Feed Writer

支援 init-config、run、validate、template、dedup 命令。
"""

import click
import logging
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Optional

from feed_writer.collectors.rss import collect_candidates, fetch_feed
from feed_writer.config import FeedWriterConfig, OrchestratorSettings
from feed_writer.errors import ConfigError, DuplicateSlugError, FeedWriterError
from feed_writer.generation.extractor import LLMArticleGenerator, LLMFactExtractor
from feed_writer.generation.llm import LLMClient
from feed_writer.models import DedupStatus, FeedSource
from feed_writer.pipeline.orchestrator import GenerationOrchestrator
from feed_writer.pipeline.progress import LoggingProgressSink
from feed_writer.processing.canonical_key import SlugAliases, is_valid_canonical_key
from feed_writer.processing.dedupe import DuplicateResolver
from feed_writer.publishing.mdx import GitHubClient, MdxPublisher
from feed_writer.publishing.wordpress import WordPressPublisher
from feed_writer.storage.file_store import FileStore
from feed_writer.storage.pg_store import PostgresStore
from feed_writer.templating.resolver import TemplateResolver

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

MINIMAL_CONFIG = """# Feed Writer Configuration
run_timezone: "Asia/Tokyo"
max_attempts: 5
template_id: "collabo-cafe"
feeds: []
"""


@click.group()
def cli():
    """RSS Feed Writer CLI"""
    pass


@cli.command()
@click.option('--out', default='config.yaml', help='Output config file path')
def init_config(out: str):
    """產生範本設定檔"""

    # 讀取現有的 example config (如果存在)
    example_path = Path(__file__).parent.parent / 'config.example.yaml'

    if example_path.exists():
        with open(example_path, 'r', encoding='utf-8') as f:
            content = f.read()
    else:
        content = MINIMAL_CONFIG

    with open(out, 'w', encoding='utf-8') as f:
        f.write(content)

    click.echo(f"✓ Config file created: {out}")
    click.echo(f"  Edit this file and run: feed-writer run --config {out} --feed <feed id>")


@cli.command()
@click.option('--config', 'config_path', required=True, help='Config YAML file path')
@click.option('--feed', 'feed_ref', required=True, help='Feed id or URL')
@click.option('--start-index', default=0, show_default=True, help='First candidate index')
@click.option('--max-attempts', type=click.IntRange(min=1), default=None, help='Override max_attempts')
@click.option('--single', is_flag=True, help='Only process the candidate at --start-index')
def run(config_path: str, feed_ref: str, start_index: int, max_attempts: Optional[int], single: bool):
    """執行一次文章生成"""

    click.echo("=" * 60)
    click.echo("Feed Writer: RSS -> Article")
    click.echo("=" * 60)

    logger.info(f"Loading config: {config_path}")
    cfg = FeedWriterConfig.from_yaml(config_path)
    source = resolve_feed(cfg, feed_ref)
    if not source.is_active:
        click.echo(f"✗ Feed {source.id} is inactive")
        raise SystemExit(1)

    store = initialize_storage(cfg)
    try:
        orchestrator = build_orchestrator(cfg, store, source)

        if single:
            outcome = orchestrator.generate_item(source.url, start_index, source=source)
        else:
            outcome = orchestrator.run(source.url, start_index, max_attempts, source=source)

        click.echo("\n" + "=" * 60)
        click.echo("RUN SUMMARY")
        click.echo("=" * 60)
        click.echo(f"Run ID: {outcome.run_id}")
        click.echo(f"Status: {outcome.status.value}")
        click.echo(f"Attempts: {len(outcome.attempts)} " +
                   f"(duplicates={outcome.duplicates_seen}, rejected={outcome.rejections_seen})")
        for attempt in outcome.attempts:
            click.echo(f"  #{attempt.index} [{attempt.result}] {attempt.title}")

        if outcome.succeeded:
            click.echo(f"✓ Canonical key: {outcome.canonical_key}")
            click.echo(f"✓ Published: {outcome.publish.reference}")
        else:
            click.echo(f"✗ Exhausted. Last duplicate: {outcome.last_duplicate_message}")

    except DuplicateSlugError as e:
        click.echo(f"✗ Duplicate: {e} (reset with: feed-writer dedup reset '{e.canonical_key}')")
        raise SystemExit(1)
    except FeedWriterError as e:
        logger.error(f"Run failed: {e}", exc_info=True)
        click.echo(f"✗ Run failed: {e}")
        raise SystemExit(1)
    finally:
        if hasattr(store, 'close'):
            store.close()


@cli.command()
@click.option('--config', 'config_path', required=True, help='Config YAML file path')
@click.option('--feed', 'feed_ref', default=None, help='Feed id or URL (default: all active feeds)')
def validate(config_path: str, feed_ref: Optional[str]):
    """取得 feed 並顯示 admission 結果"""
    cfg = FeedWriterConfig.from_yaml(config_path)
    sources = [resolve_feed(cfg, feed_ref)] if feed_ref else [f for f in cfg.feeds if f.is_active]

    for source in sources:
        report = collect_candidates(source, max_items=cfg.max_items_per_feed)
        click.echo(f"{source.id}: {report.valid}/{report.total} admitted")
        for entry, reasons in report.rejection_reasons():
            click.echo(f"  ✗ {entry.link or entry.title or '(untitled)'}: {'; '.join(reasons)}")


@cli.group()
def template():
    """Template 操作"""
    pass


@template.command('list')
@click.option('--templates-dir', default='templates', show_default=True)
def template_list(templates_dir: str):
    """列出 template"""
    for template_id in TemplateResolver(templates_dir).list_templates():
        click.echo(template_id)


@template.command('show')
@click.argument('template_id')
@click.option('--templates-dir', default='templates', show_default=True)
@click.option('--option', 'options', multiple=True, help='Generation option key=value')
@click.option('--debug', is_flag=True, help='Insert section boundary markers')
def template_show(template_id: str, templates_dir: str, options: tuple, debug: bool):
    """顯示 resolve 後的 template"""
    context = {}
    for option in options:
        key, _, value = option.partition('=')
        context[key.strip()] = _parse_option_value(value.strip())

    merged = TemplateResolver(templates_dir).resolve(template_id, context, debug=debug)
    click.echo(f"Template: {merged.template_id} v{merged.meta.version}")
    click.echo(f"Steps: {', '.join(merged.step_names)}")
    if merged.skipped_steps:
        click.echo(f"Skipped steps: {', '.join(merged.skipped_steps)}")
    click.echo(f"Required placeholders: {', '.join(merged.required_placeholders)}")
    if merged.skipped_sections:
        click.echo(f"Skipped sections: {', '.join(merged.skipped_sections)}")
    click.echo("-" * 60)
    click.echo(merged.assemble_sections())


def _parse_option_value(value: str):
    lowered = value.lower()
    if lowered in ('true', 'false'):
        return lowered == 'true'
    try:
        return int(value)
    except ValueError:
        return value


@cli.group()
def dedup():
    """Canonical key 紀錄操作"""
    pass


@dedup.command('list')
@click.option('--config', 'config_path', required=True, help='Config YAML file path')
@click.option('--status', type=click.Choice([s.value for s in DedupStatus]), default=None)
def dedup_list(config_path: str, status: Optional[str]):
    """列出紀錄"""
    cfg = FeedWriterConfig.from_yaml(config_path)
    resolver = DuplicateResolver(initialize_storage(cfg))
    records = resolver.list_records(DedupStatus(status) if status else None)
    for record in records:
        click.echo(f"{record.status.value:<10} {record.canonical_key}  {record.publish_ref or ''}")
    click.echo(f"{len(records)} record(s)")


@dedup.command('show')
@click.argument('canonical_key')
@click.option('--config', 'config_path', required=True, help='Config YAML file path')
def dedup_show(canonical_key: str, config_path: str):
    """顯示單一紀錄"""
    cfg = FeedWriterConfig.from_yaml(config_path)
    record = initialize_storage(cfg).get(canonical_key)
    if record is None:
        click.echo(f"No record: {canonical_key}")
        raise SystemExit(1)
    click.echo(record.model_dump_json(indent=2))


@dedup.command('reset')
@click.argument('canonical_key')
@click.option('--config', 'config_path', required=True, help='Config YAML file path')
@click.option('--yes', is_flag=True, help='Skip confirmation')
def dedup_reset(canonical_key: str, config_path: str, yes: bool):
    """刪除紀錄以允許重新生成"""
    if not is_valid_canonical_key(canonical_key):
        click.echo(f"⚠ Not a well-formed canonical key: {canonical_key}")
    if not yes:
        click.confirm(f"Reset {canonical_key}?", abort=True)

    cfg = FeedWriterConfig.from_yaml(config_path)
    if DuplicateResolver(initialize_storage(cfg)).reset(canonical_key):
        click.echo(f"✓ Reset: {canonical_key}")
    else:
        click.echo(f"✗ No record: {canonical_key}")
        raise SystemExit(1)


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------

def resolve_feed(cfg: FeedWriterConfig, feed_ref: str) -> FeedSource:
    """Feed id / URL -> FeedSource (未登錄的 URL 以不驗證的 FeedSource 處理)"""
    source = cfg.get_feed(feed_ref)
    if source is not None:
        return source
    if feed_ref.startswith(('http://', 'https://')):
        return FeedSource(id=feed_ref, url=feed_ref)
    raise click.BadParameter(f"Unknown feed: {feed_ref}", param_hint='--feed')


def initialize_storage(cfg: FeedWriterConfig):
    """初始化 dedup 儲存後端（fail fast，不 fallback）"""
    if cfg.dedup.backend == "postgres":
        dsn = cfg.get_postgres_dsn()
        if not dsn:
            raise ConfigError("Postgres backend requires dedup.postgres_dsn_env to name a set variable")

        logger.info("Initializing Postgres storage...")
        return PostgresStore(dsn, auto_init_schema=True)

    logger.info("Using file storage backend")
    return FileStore(cfg.dedup.base_dir)


def build_publisher(cfg: FeedWriterConfig):
    """依 publish.target 建立 publisher"""
    publish = cfg.publish
    if publish.target == "wordpress":
        if not publish.wordpress.base_url or not publish.wordpress.username:
            raise ConfigError("WordPress target requires publish.wordpress.base_url and username")
        return WordPressPublisher(
            publish.wordpress.base_url,
            publish.wordpress.username,
            cfg.get_wordpress_password(),
            status=publish.wordpress.status,
        )

    github = None
    if publish.github.repository:
        github = GitHubClient(
            publish.github.repository,
            cfg.get_github_token(),
            base_branch=publish.github.base_branch,
            api_url=publish.github.api_url,
        )
    return MdxPublisher(publish.content_dir, github=github)


def build_orchestrator(cfg: FeedWriterConfig, store, source: FeedSource) -> GenerationOrchestrator:
    llm = LLMClient(cfg.llm, cfg.get_llm_api_key())
    aliases = SlugAliases.from_yaml(cfg.slug_aliases) if cfg.slug_aliases else None

    return GenerationOrchestrator(
        fetcher=partial(fetch_feed, max_items=cfg.max_items_per_feed, source=source),
        extractor=LLMFactExtractor(llm),
        generator=LLMArticleGenerator(llm),
        publisher=build_publisher(cfg),
        dedup=DuplicateResolver(store, reservation_ttl=timedelta(minutes=cfg.dedup.reservation_ttl_minutes)),
        templates=TemplateResolver(cfg.templates_dir),
        settings=OrchestratorSettings.from_config(cfg),
        aliases=aliases,
        progress=[LoggingProgressSink()],
        run_store=store,
    )


if __name__ == "__main__":
    cli()
