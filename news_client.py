"""
Headline Aggregator Client - Print the aggregated feed
Builds the feed once in-process and prints it to the terminal.

Examples:
  python news_client.py --count 10
  python news_client.py --interest Sports --source thedailystar.net
  python news_client.py --search "asia cup"
  python news_client.py --json > feed.json
"""
import argparse
import json
import logging
import sys
from typing import Dict, List, Optional

from aggregator import build_feed, load_sites, SITES_PATH


def filter_feed(articles: List[Dict], interest: Optional[str] = None,
                source: Optional[str] = None, count: Optional[int] = None,
                search: Optional[str] = None) -> List[Dict]:
    """Narrow serialized feed entries by interest, source and free text, then cap."""
    query = (search or '').strip().lower()
    result = []
    for article in articles:
        if interest and article.get('interest', '').lower() != interest.lower():
            continue
        if source and source.lower() not in article.get('sourceLabel', '').lower():
            continue
        if query:
            haystack = ' '.join([
                article.get('title') or '',
                article.get('summary') or '',
                article.get('sourceLabel') or '',
            ]).lower()
            if query not in haystack:
                continue
        result.append(article)
    return result[:count] if count else result


def print_article(article: Dict, index: int) -> None:
    """Pretty print a single article."""
    print(f"\n{'='*80}")
    print(f"Article #{index}")
    print(f"{'='*80}")
    print(f"Title:        {article.get('title', 'N/A')}")
    print(f"URL:          {article.get('link', 'N/A')}")
    print(f"Published:    {article.get('pubDate', 'N/A')}")
    print(f"Source:       {article.get('sourceLabel', 'N/A')}")
    print(f"Interest:     {article.get('interest', 'N/A')}")

    summary = article.get('summary', '')
    if summary:
        # Truncate summary to 150 characters for readability
        summary_preview = summary[:150] + "..." if len(summary) > 150 else summary
        print(f"Summary:      {summary_preview}")

    image = article.get('image')
    if image:
        print(f"Image:        {image}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the feed printer."""
    parser = argparse.ArgumentParser(description="Print the aggregated headline feed")
    parser.add_argument('--count', type=int, default=None, help="Maximum articles to print")
    parser.add_argument('--interest', default=None, help="Only show this interest label")
    parser.add_argument('--source', default=None, help="Only show sources containing this text")
    parser.add_argument('--search', default=None, help="Only show articles whose title, summary or source contains this text")
    parser.add_argument('--sites', default=SITES_PATH, help="Path to a sites JSON file")
    parser.add_argument('--json', action='store_true', help="Print raw JSON instead of text")
    args = parser.parse_args(argv)

    # Suppress excessive logging for clean output
    logging.getLogger('newsagg').setLevel(logging.WARNING)

    batch = build_feed(load_sites(args.sites))
    articles = filter_feed(batch.to_list(), args.interest, args.source, args.count, args.search)

    if args.json:
        json.dump(articles, sys.stdout, indent=2, ensure_ascii=False)
        print()
        return 0

    print(f"Fetched {len(batch.articles)} articles, showing {len(articles)}")
    for i, article in enumerate(articles, 1):
        print_article(article, i)
    return 0


if __name__ == '__main__':
    sys.exit(main())
