# cli.py

import argparse
import json
import logging
from typing import List

from config import SystemConfig
from core.library import ImageLibrary
from core.models import SearchResult
from utils.file_utils import format_file_size
from utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def _results_to_json(results: List[SearchResult]) -> list:
    return [
        {
            "id": r.asset.id,
            "file_name": r.asset.file_name,
            "file_path": r.asset.file_path,
            "similarity": round(float(r.similarity), 4),
            "tags": r.asset.tags,
        }
        for r in results
    ]


def _print_results(results: List[SearchResult], args, title: str):
    if args.json:
        print(json.dumps(_results_to_json(results), indent=2))
        return

    if not results:
        print("No matching images found.")
        return

    print(f"\n{title} ({len(results)}):")
    for i, r in enumerate(results, 1):
        tags = f" [{', '.join(r.asset.tags)}]" if r.asset.tags else ""
        print(f"{i}. #{r.asset.id} {r.asset.file_path} (similarity: {r.similarity:.4f}){tags}")


def index_command(library: ImageLibrary, args):
    """Index images from directory"""
    print(f"Indexing images from: {args.directory}")

    report = library.index_folder(args.directory)
    if report.message:
        print(report.message)
        return 1

    print(f"Indexed {report.added} new images "
          f"({report.skipped} already indexed, {report.failed} failed, "
          f"{report.tagged} tagged)")
    for path in report.failures:
        print(f"  failed: {path}")
    return 0


def search_command(library: ImageLibrary, args):
    """Search images by file name, tags or meaning"""
    results = library.search(args.query)
    if args.top_k:
        results = results[:args.top_k]
    _print_results(results, args, f"Results for '{args.query}'")
    return 0


def duplicate_command(library: ImageLibrary, args):
    """Detect near-duplicate images"""
    clusters = library.cluster(args.hash_threshold, linkage=args.linkage)

    if args.json:
        output = [
            {
                "representative": c.representative.file_path,
                "duplicates": [m.file_path for m in c.duplicates],
            }
            for c in clusters
        ]
        print(json.dumps(output, indent=2))
        return 0

    total_dups = sum(len(c.duplicates) for c in clusters)
    print(f"\nFound {len(clusters)} duplicate groups with {total_dups} total duplicates")

    for i, cluster in enumerate(clusters, 1):
        rep = cluster.representative
        print(f"\nGroup {i}:")
        print(f"  Representative: #{rep.id} {rep.file_path} ({format_file_size(rep.file_size)})")
        print(f"  Duplicates ({len(cluster.duplicates)}):")
        for dup in cluster.duplicates:
            print(f"    - #{dup.id} {dup.file_path} ({format_file_size(dup.file_size)})")
    return 0


def similar_command(library: ImageLibrary, args):
    """List images visually similar to an indexed one"""
    results = library.find_similar(args.asset_id, args.hash_threshold)
    _print_results(results, args, f"Images similar to #{args.asset_id}")
    return 0


def remove_command(library: ImageLibrary, args):
    """Remove an image from the index"""
    if library.delete(args.asset_id):
        print(f"Removed #{args.asset_id} from index")
        return 0
    print(f"No image with id {args.asset_id}")
    return 1


def list_command(library: ImageLibrary, args):
    """List indexed images"""
    for record in library.assets():
        tags = ", ".join(record.tags)
        print(f"#{record.id}\t{record.file_path}\t{record.width}x{record.height}\t"
              f"{format_file_size(record.file_size)}\t{tags}")
    return 0


def backfill_command(library: ImageLibrary, args):
    """Tag images that were indexed without tags"""
    tagged = library.backfill_tags(args.limit)
    print(f"Tagged {tagged} images")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="VisionQuest - local image duplicate finder and tag search"
    )
    parser.add_argument('-c', '--config', default="config.yaml",
                        help='Path to YAML configuration')
    parser.add_argument('--json', action='store_true', help='Print results as JSON')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    index_parser = subparsers.add_parser('index', help='Index images from directory')
    index_parser.add_argument('directory', help='Directory containing images')
    index_parser.set_defaults(func=index_command)

    search_parser = subparsers.add_parser('search', help='Search by keyword or description')
    search_parser.add_argument('query', help='Search text')
    search_parser.add_argument('-k', '--top-k', type=int, default=0,
                               help='Number of results to return (0 = all)')
    search_parser.set_defaults(func=search_command)

    duplicate_parser = subparsers.add_parser('duplicates', help='Detect duplicate images')
    duplicate_parser.add_argument('-t', '--hash-threshold', type=int, default=None,
                                  help='Maximum differing fingerprint bits')
    duplicate_parser.add_argument('--linkage', choices=['greedy', 'connected'], default=None,
                                  help='Clustering rule')
    duplicate_parser.set_defaults(func=duplicate_command)

    similar_parser = subparsers.add_parser('similar', help='Find images similar to an indexed one')
    similar_parser.add_argument('asset_id', type=int, help='Image id')
    similar_parser.add_argument('-t', '--hash-threshold', type=int, default=None,
                                help='Maximum differing fingerprint bits')
    similar_parser.set_defaults(func=similar_command)

    remove_parser = subparsers.add_parser('remove', help='Remove an image from the index')
    remove_parser.add_argument('asset_id', type=int, help='Image id')
    remove_parser.set_defaults(func=remove_command)

    list_parser = subparsers.add_parser('list', help='List indexed images')
    list_parser.set_defaults(func=list_command)

    backfill_parser = subparsers.add_parser('backfill-tags', help='Tag untagged images')
    backfill_parser.add_argument('-n', '--limit', type=int, default=None,
                                 help='Maximum number of images to send')
    backfill_parser.set_defaults(func=backfill_command)

    return parser


def main_cli(argv=None) -> int:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    config = SystemConfig.load(args.config)
    setup_logging(config.log_level, config.log_dir)

    library = ImageLibrary.open(config)
    try:
        return args.func(library, args)
    finally:
        library.close()


if __name__ == "__main__":
    raise SystemExit(main_cli())
