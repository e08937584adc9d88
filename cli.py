#!/usr/bin/env python3
"""
DocuSight Command Line Interface

Main CLI entry point for the DocuSight media library.
Provides commands for ingesting media, searching, reviewing identities,
smart collections and export.
"""

import json
import logging
import time
from pathlib import Path
from typing import Optional

import click
from tqdm import tqdm

from docusight.config import get_config_value, load_config
from docusight.core.library import MediaLibrary
from docusight.detection.adapter import SidecarDetectionAdapter
from docusight.errors import DocuSightError, InvalidQuery
from docusight.library.query import SORT_KEYS, SearchQuery, SortSpec
from docusight.models.collections import CollectionType
from docusight.models.media import AssetStatus, MediaKind, TagCategory
from docusight.pipeline.enrichment import FileDescriptor
from docusight.storage.store import JsonFileStore
from docusight.utils.logging import ProcessingStats, setup_console_logging

logger = logging.getLogger(__name__)

DEFAULT_LIBRARY_DIR = '.docusight'
SIDECAR_SUFFIX = '.detections.json'
MEDIA_EXTENSIONS = {
    '.jpg', '.jpeg', '.png', '.tif', '.tiff', '.gif', '.webp', '.bmp',
    '.mp4', '.mov', '.avi', '.mkv', '.m4v',
    '.mp3', '.wav', '.m4a', '.flac', '.aac',
    '.pdf', '.txt', '.md', '.csv',
}


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Configuration file path')
@click.option('--library', '-l', 'library_dir', type=click.Path(file_okay=False, dir_okay=True),
              default=None, help=f'Library directory (default: {DEFAULT_LIBRARY_DIR})')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--quiet', '-q', is_flag=True, help='Suppress non-error output')
@click.pass_context
def main(ctx, config: Optional[str] = None, library_dir: Optional[str] = None,
         verbose: bool = False, quiet: bool = False):
    """
    DocuSight - Media intelligence and retrieval for documentary production

    Ingests images, video, audio and documents, enriches them with detections
    and documentary-value scores, groups faces into people, and builds smart
    collections you can search and export.
    """
    if ctx.obj is None:
        ctx.obj = {}

    loaded = load_config(config)

    level = get_config_value(loaded, 'logging.level', 'INFO')
    if verbose:
        level = 'DEBUG'
    elif quiet:
        level = 'ERROR'
    setup_console_logging(level, log_file=get_config_value(loaded, 'logging.file'))

    ctx.obj['config'] = loaded
    ctx.obj['library_dir'] = Path(library_dir or get_config_value(loaded, 'storage.path')
                                  or DEFAULT_LIBRARY_DIR)
    ctx.obj['verbose'] = verbose
    ctx.obj['quiet'] = quiet


def _open_library(ctx) -> MediaLibrary:
    """Open the library directory and load its records."""
    store = JsonFileStore(ctx.obj['library_dir'])
    library = MediaLibrary(SidecarDetectionAdapter(suffix=SIDECAR_SUFFIX),
                           config=ctx.obj['config'], store=store)
    library.load()
    return library


def _find_media(directory: Path, recursive: bool):
    pattern = '**/*' if recursive else '*'
    return sorted(path for path in directory.glob(pattern)
                  if path.is_file() and path.suffix.lower() in MEDIA_EXTENSIONS
                  and not path.name.endswith(SIDECAR_SUFFIX))


@main.command()
@click.argument('directory', type=click.Path(exists=True, file_okay=False, dir_okay=True))
@click.option('--recursive/--no-recursive', default=True, help='Process subdirectories')
@click.option('--collections/--no-collections', 'regenerate', default=True,
              help='Regenerate smart collections afterwards')
@click.pass_context
def ingest(ctx, directory: str, recursive: bool = True, regenerate: bool = True):
    """
    Ingest every media file in a directory.

    Detections are read from sidecar files named <file>.detections.json;
    files without a sidecar are enriched from their metadata only. Files
    already in the library (same path) are skipped.

    DIRECTORY: Path to directory containing media files
    """
    quiet = ctx.obj.get('quiet', False)
    files = _find_media(Path(directory), recursive)
    if not files:
        click.echo("❌ No media files found in directory", err=True)
        return

    if not quiet:
        click.echo(f"📥 Found {len(files)} media files in {directory}")

    stats = ProcessingStats()
    stats.set_total(len(files))

    with _open_library(ctx) as library:
        known = {asset.original.url for asset in library.search() if asset.original}
        for path in tqdm(files, desc="Ingesting", unit="file", disable=quiet):
            if str(path) in known:
                stats.add_skipped()
                continue
            start = time.time()
            asset = library.ingest(FileDescriptor.from_path(path))
            ready = asset.status is AssetStatus.READY
            stats.add_result(ready, failure_code=None if ready else asset.error_code,
                             processing_time=time.time() - start,
                             faces=len(asset.faces), tags=len(asset.tags))
            if not ready:
                stats.add_error(str(path), asset.error or 'unknown error')

        if regenerate:
            generated = library.regenerate_collections()
            if not quiet:
                click.echo(f"🗂  {len(generated)} smart collections")

    if not quiet:
        stats.print_summary()


@main.command()
@click.option('--text', '-t', help='Free text over filename, description and tags')
@click.option('--tag', 'tags', multiple=True, help='Tag name (repeatable, any matches)')
@click.option('--category', 'categories', multiple=True,
              type=click.Choice([c.value for c in TagCategory]), help='Tag category')
@click.option('--from', 'date_from', help='Earliest capture date (YYYY-MM-DD)')
@click.option('--to', 'date_to', help='Latest capture date (YYYY-MM-DD)')
@click.option('--kind', 'kinds', multiple=True,
              type=click.Choice([k.value for k in MediaKind]), help='Media kind')
@click.option('--person', 'persons', multiple=True, help='Person id')
@click.option('--min-quality', type=float, help='Minimum overall quality (0.0-1.0)')
@click.option('--max-quality', type=float, help='Maximum overall quality (0.0-1.0)')
@click.option('--location', help='City, country or address text')
@click.option('--sort', 'sort_key', type=click.Choice(SORT_KEYS), default='date')
@click.option('--order', type=click.Choice(['asc', 'desc']), default='desc')
@click.option('--limit', '-n', type=int, default=None, help='Maximum results')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table')
@click.pass_context
def search(ctx, text, tags, categories, date_from, date_to, kinds, persons, min_quality,
           max_quality, location, sort_key, order, limit, output_format):
    """Search the library."""
    try:
        query = SearchQuery.build(
            text=text,
            tags=tags or None,
            categories=categories or None,
            date_from=date_from,
            date_to=date_to,
            kinds=kinds or None,
            persons=persons or None,
            min_quality=min_quality,
            max_quality=max_quality,
            location=location,
        )
    except InvalidQuery as e:
        raise click.BadParameter(str(e))

    with _open_library(ctx) as library:
        results = library.search(query, SortSpec(sort_key, order), limit=limit)

    if output_format == 'json':
        click.echo(json.dumps([asset.to_dict() for asset in results], indent=2))
        return

    if not results:
        click.echo("No matching assets")
        return
    click.echo(f"{'ID':<20} {'FILE':<30} {'KIND':<9} {'DATE':<11} {'QUALITY':>7}  TAGS")
    for asset in results:
        quality = f"{asset.quality_score:.2f}" if asset.quality_score is not None else '-'
        tag_names = ', '.join(tag.name for tag in asset.tags[:5])
        click.echo(f"{asset.id:<20} {asset.filename[:30]:<30} {asset.kind.value:<9} "
                   f"{asset.effective_date.date().isoformat():<11} {quality:>7}  {tag_names}")
    click.echo(f"\n{len(results)} results")


@main.group(invoke_without_command=True)
@click.option('--all', 'include_retired', is_flag=True, help='Include retired (merged) persons')
@click.pass_context
def people(ctx, include_retired: bool = False):
    """List people recognised across the library."""
    if ctx.invoked_subcommand is not None:
        return
    with _open_library(ctx) as library:
        persons = library.list_persons(include_retired=include_retired)
    if not persons:
        click.echo("No people yet")
        return
    for person in persons:
        flags = []
        if person.verified:
            flags.append('verified')
        if person.retired:
            flags.append(f'merged into {person.retired_into}')
        suffix = f" ({', '.join(flags)})" if flags else ''
        aliases = f" aka {', '.join(person.aliases)}" if person.aliases else ''
        click.echo(f"{person.id:<20} {person.name}{aliases} - {person.face_count} faces{suffix}")


@people.command('merge')
@click.argument('target')
@click.argument('source')
@click.pass_context
def people_merge(ctx, target: str, source: str):
    """Merge person SOURCE into person TARGET."""
    with _open_library(ctx) as library:
        try:
            person = library.merge_persons(target, source)
        except DocuSightError as e:
            raise click.ClickException(str(e))
    click.echo(f"✅ Merged {source} into {person.id} ({person.name}, {person.face_count} faces)")


@people.command('suggest')
@click.option('--threshold', type=float, default=None, help='Centroid similarity threshold')
@click.pass_context
def people_suggest(ctx, threshold: Optional[float] = None):
    """Suggest people that may be the same person."""
    with _open_library(ctx) as library:
        groups = library.suggest_merges(threshold)
    if not groups:
        click.echo("No merge suggestions")
        return
    for group in groups:
        names = ', '.join(f"{p['name']} [{p['id']}]" for p in group['persons'])
        click.echo(f"{group['avg_similarity']:.3f}  {names}")


@people.command('rename')
@click.argument('person_id')
@click.argument('name')
@click.pass_context
def people_rename(ctx, person_id: str, name: str):
    """Name a person; the previous name is kept as an alias."""
    with _open_library(ctx) as library:
        try:
            person = library.rename_person(person_id, name)
        except DocuSightError as e:
            raise click.ClickException(str(e))
    click.echo(f"✅ {person.id} is now {person.name}")


@people.command('verify')
@click.argument('person_id')
@click.pass_context
def people_verify(ctx, person_id: str):
    """Confirm a person without renaming it."""
    with _open_library(ctx) as library:
        try:
            person = library.verify_person(person_id)
        except DocuSightError as e:
            raise click.ClickException(str(e))
    click.echo(f"✅ {person.id} ({person.name}) verified")


@main.command()
@click.option('--regenerate/--no-regenerate', default=True, help='Regenerate smart collections first')
@click.option('--type', 'collection_type', type=click.Choice([t.value for t in CollectionType]),
              default=None, help='Only list this collection type')
@click.pass_context
def collections(ctx, regenerate: bool = True, collection_type: Optional[str] = None):
    """List manual and smart collections."""
    with _open_library(ctx) as library:
        if regenerate:
            library.regenerate_collections()
        listed = library.list_collections(CollectionType(collection_type) if collection_type else None)
    if not listed:
        click.echo("No collections")
        return
    for collection in listed:
        confidence = f" conf={collection.confidence:.2f}" if collection.confidence is not None else ''
        click.echo(f"{collection.id:<32} {collection.type.value:<6} {collection.size:>4} items  "
                   f"{collection.name}{confidence}")


@main.command()
@click.argument('output', type=click.Path(dir_okay=False))
@click.option('--collection', 'collection_id', help='Export only this collection')
@click.pass_context
def export(ctx, output: str, collection_id: Optional[str] = None):
    """Export the library (or one collection) as JSON to OUTPUT."""
    with _open_library(ctx) as library:
        try:
            document = library.export(collection_id, output=output)
        except DocuSightError as e:
            raise click.ClickException(str(e))
    if not ctx.obj.get('quiet'):
        click.echo(f"📦 Exported {len(document['assets'])} assets, {len(document['persons'])} "
                   f"people and {len(document['collections'])} collections to {output}")


@main.command()
@click.option('--format', 'output_format', type=click.Choice(['summary', 'json']), default='summary')
@click.pass_context
def stats(ctx, output_format: str = 'summary'):
    """Show library statistics."""
    with _open_library(ctx) as library:
        summary = library.stats()

    if output_format == 'json':
        click.echo(json.dumps(summary, indent=2, default=str))
        return

    click.echo("=" * 60)
    click.echo("LIBRARY STATISTICS")
    click.echo("=" * 60)
    click.echo(f"Assets:           {summary['total_assets']}")
    click.echo(f"Total size:       {summary['total_size'] / (1024 * 1024):.1f} MB")
    click.echo(f"People:           {summary['persons']}")
    click.echo(f"Collections:      {summary['collections']['manual']} manual, "
               f"{summary['collections']['auto']} smart")
    click.echo(f"Errors:           {summary['errors']}")
    if summary['by_kind']:
        click.echo("\nBy kind:")
        for kind, count in sorted(summary['by_kind'].items()):
            click.echo(f"  - {kind}: {count}")
    if summary['quality_distribution']:
        click.echo("\nQuality:")
        for band, count in sorted(summary['quality_distribution'].items()):
            click.echo(f"  - {band}: {count}")
    if summary['top_tags']:
        click.echo("\nTop tags:")
        for entry in summary['top_tags']:
            click.echo(f"  - {entry['tag']}: {entry['count']}")


@main.command()
def version():
    """Show DocuSight version."""
    from docusight import __version__
    click.echo(f"DocuSight {__version__}")


if __name__ == '__main__':
    main()
