# cli.py

import argparse
import sys
from pathlib import Path

from embedcache.components.visual_search_service import VisualSearchService
from embedcache.config import SystemConfig
from embedcache.core.errors import EmbeddingCacheError
from embedcache.core.similarity import available_metrics
from embedcache.security.input_validation import SecurityValidator
from embedcache.utils.file_utils import format_file_size, get_image_files, write_json


def _load_config(args) -> SystemConfig:
    config = SystemConfig.load(args.config)
    if args.snapshot:
        config.cache.snapshot_path = args.snapshot
    return config


def _open_service(args) -> VisualSearchService:
    """Service restored from the snapshot file, if there is one"""
    service = VisualSearchService(_load_config(args)).open()
    if Path(service.config.cache.snapshot_path).exists():
        count = service.load_snapshot()
        print(f"Loaded {count} cached embeddings from {service.config.cache.snapshot_path}")
    return service


def index_command(args):
    """Index images from directory"""
    print(f"Indexing images from: {args.directory}")

    if not SecurityValidator.validate_directory(args.directory):
        print(f"Error: Cannot read directory {args.directory}")
        return 1

    image_paths = get_image_files(args.directory, recursive=not args.no_recursive)
    if not image_paths:
        print("No images found.")
        return 0

    with _open_service(args) as service:
        print(f"Found {len(image_paths)} images. Starting indexing...")
        report = service.index_images(image_paths, show_progress=True)

        for failure in report.failed:
            print(f"  Skipped {failure.item}: {failure.error}")

        path = service.save_snapshot()
        print(f"Indexed {len(report.succeeded)} images ({len(report.failed)} failed) "
              f"in {report.elapsed:.2f}s")
        print(f"Snapshot saved to: {path}")
    return 0


def similarity_search_command(args):
    """Execute similarity search from command line"""
    print(f"Searching for images similar to: {args.query}")

    with _open_service(args) as service:
        if not len(service.cache):
            print("Error: No cached embeddings. Please index images first.")
            return 1

        try:
            query_vector = service.extract_embedding(args.query)
        except EmbeddingCacheError as e:
            print(f"Error: {e}")
            return 1

        options = {
            'metric': args.metric,
            'threshold': args.threshold,
            'max_results': args.top_k,
            'use_index': args.use_index
        }
        result = service.search(query_vector, options)

    if not result.success:
        print(f"Error: {result.error}")
        return 1

    # Output results
    print(f"\nTop {result.total_matches} similar images "
          f"({result.total_candidates} candidates, {result.search_time * 1000:.2f}ms):")
    for match in result.matches:
        source = match.metadata.get('source', match.key)
        print(f"{match.rank}. {source} (similarity: {match.score:.4f})")

    # Save results to JSON if requested
    if args.output:
        write_json(result.to_dict(), args.output)
        print(f"\nResults saved to: {args.output}")
    return 0


def stats_command(args):
    """Show cache and system statistics"""
    with _open_service(args) as service:
        stats = service.stats()

    cache = stats['cache']
    system = stats['system']
    print("Embedding cache")
    print(f"  Entries:          {cache['entry_count']}")
    print(f"  Estimated size:   {format_file_size(cache['estimated_bytes'])}")
    print(f"  Dimension:        {cache['dimension']}")
    print(f"  Eviction policy:  {cache['eviction_policy']}")
    print(f"  Oldest entry:     {cache['oldest_inserted_at']}")
    print("System")
    print(f"  Memory usage:     {system['memory_percent']}%")
    print(f"  Process RSS:      {system['process_rss_mb']:.1f} MB")
    return 0


def _add_common_arguments(parser):
    parser.add_argument('-c', '--config', default='config.yaml',
                        help='YAML configuration file')
    parser.add_argument('-s', '--snapshot',
                        help='Snapshot file (overrides cache.snapshot_path)')


def main_cli(argv=None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Embedding cache - Command Line Interface"
    )
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Index command
    index_parser = subparsers.add_parser('index', help='Index images from directory')
    index_parser.add_argument('directory', help='Directory containing images')
    index_parser.add_argument('--no-recursive', action='store_true',
                              help='Do not descend into subdirectories')
    _add_common_arguments(index_parser)
    index_parser.set_defaults(func=index_command)

    # Similarity search command
    search_parser = subparsers.add_parser('search', help='Search for similar images')
    search_parser.add_argument('query', help='Path to query image')
    search_parser.add_argument('-k', '--top-k', type=int, default=10,
                               help='Number of results to return')
    search_parser.add_argument('-t', '--threshold', type=float, default=0.7,
                               help='Minimum similarity score')
    search_parser.add_argument('-m', '--metric', choices=available_metrics(), default='cosine',
                               help='Similarity metric')
    search_parser.add_argument('--use-index', action='store_true',
                               help='Narrow candidates with the quantized index')
    search_parser.add_argument('-o', '--output', help='Output JSON file for results')
    _add_common_arguments(search_parser)
    search_parser.set_defaults(func=similarity_search_command)

    # Stats command
    stats_parser = subparsers.add_parser('stats', help='Show cache statistics')
    _add_common_arguments(stats_parser)
    stats_parser.set_defaults(func=stats_command)

    # Parse arguments
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        return args.func(args)
    except EmbeddingCacheError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main_cli())
