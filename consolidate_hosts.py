#!/usr/bin/env python3
"""Consolidate domain blocklists into a single hosts file.

Usage:
  consolidate_hosts.py <sources_file> <output_file>

The sources file lists one URL or local path per line ('#' comments and blank
lines allowed). Each source is fetched (or read), domains are extracted with
strict DNS label validation, de-duplicated, sorted and written as
"0.0.0.0 domain" lines below a header echoing the sources.
"""

import concurrent.futures
import datetime
import logging
import os
import re
import string
import sys
import tempfile
from collections import Counter

import requests

logger = logging.getLogger(__name__)


def _env_int(name, default):
    """Read a positive integer from the environment, or return the default."""
    try:
        value = int(os.environ.get(name, default))
    except ValueError:
        return default
    return value if value > 0 else default


# Per-source fetch timeout in seconds, and how many sources are retrieved at once
REQUEST_TIMEOUT = _env_int("CONSOLIDATE_HOSTS_TIMEOUT", 30)
MAX_WORKERS = _env_int("CONSOLIDATE_HOSTS_WORKERS", 4)
LOG_LEVEL = os.environ.get("CONSOLIDATE_HOSTS_LOG_LEVEL", "INFO").upper()

HEADERS = {
    "User-Agent": "consolidate-hosts/1.0 (compatible; blocklist consolidator)"
}

# Addresses that only mean "route nowhere" at the start of a hosts line
SENTINEL_ADDRESSES = frozenset(["0.0.0.0", "127.0.0.1", "::", "::1"])
RESERVED_NAMES = frozenset(["localhost", "localdomain", "broadcasthost"])

LABEL_CHARS = frozenset(string.ascii_letters + string.digits + "-")

# Fields are separated by spaces and tabs only
FIELD_SEPARATORS = " \t"
FIELD_SPLIT = re.compile(r"[ \t]+")

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_SOURCES_NOT_FOUND = 2
EXIT_NO_SOURCES = 3
EXIT_NOTHING_RETRIEVED = 4
EXIT_WRITE_FAILED = 5


class ConsolidateError(Exception):
    """Fatal error that ends the run with a specific exit code."""
    exit_code = EXIT_USAGE


class UsageError(ConsolidateError):
    exit_code = EXIT_USAGE


class SourcesFileNotFound(ConsolidateError):
    exit_code = EXIT_SOURCES_NOT_FOUND


class NoSourcesError(ConsolidateError):
    exit_code = EXIT_NO_SOURCES


class NothingRetrievedError(ConsolidateError):
    exit_code = EXIT_NOTHING_RETRIEVED


class OutputWriteError(ConsolidateError):
    exit_code = EXIT_WRITE_FAILED


def read_sources(path):
    """Return the non-comment, non-blank lines of the sources file, unmodified."""
    if not os.path.isfile(path):
        raise SourcesFileNotFound(f"Sources file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            sources = [line.rstrip("\n") for line in f]
    except (OSError, UnicodeDecodeError) as e:
        raise NoSourcesError(f"No sources found in {path}: {e}") from e
    sources = [line for line in sources if line.strip() and not line.strip().startswith("#")]
    if not sources:
        raise NoSourcesError(f"No sources found in {path}")
    return sources


def is_remote(source):
    """Check whether the source is an http(s) URL."""
    return source.strip().startswith(("http://", "https://"))


def fetch_source(source, timeout=None):
    """Fetch a URL or read a local file, returning its raw bytes.

    Raises requests.RequestException or OSError when the source is unavailable.
    requests follows redirects and decodes gzip/deflate transfer encodings.
    """
    location = source.strip()
    if is_remote(location):
        print(f"Fetching: {location}")
        resp = requests.get(
            location,
            headers=HEADERS,
            timeout=REQUEST_TIMEOUT if timeout is None else timeout,
        )
        resp.raise_for_status()
        return resp.content
    with open(location, "rb") as f:
        return f.read()


def _retrieve(source, fetch):
    """Fetch one source, logging a warning and returning None if it fails."""
    try:
        return fetch(source)
    except requests.exceptions.Timeout:
        logger.warning("timeout when fetching %s", source)
    except requests.exceptions.RequestException as e:
        logger.warning("failed to fetch %s - %s", source, e)
    except FileNotFoundError:
        logger.warning("source not found: %s", source)
    except OSError as e:
        logger.warning("failed to read %s - %s", source, e)
    except ValueError as e:
        # Malformed URLs (urllib3 LocationParseError) and paths with NUL bytes
        logger.warning("invalid source %s - %s", source, e)
    except Exception as e:
        logger.warning("could not fetch %s - %s", source, e)
    return None


def load_sources(sources, fetch=fetch_source, workers=None):
    """Retrieve every source, skipping the ones that fail.

    Returns the contents of the successful sources in input order.
    Raises NothingRetrievedError when no source could be retrieved.
    """
    workers = max(1, min(workers or MAX_WORKERS, len(sources) or 1))
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        results = list(executor.map(lambda src: _retrieve(src, fetch), sources))
    contents = [content for content in results if content is not None]
    if not contents:
        raise NothingRetrievedError("No lists were successfully retrieved.")
    logger.debug("Retrieved %d of %d sources", len(contents), len(sources))
    return contents


def is_valid_label(label):
    """A label is 1+ ASCII letters/digits with optional internal hyphens."""
    if not label or label[0] == "-" or label[-1] == "-":
        return False
    return all(ch in LABEL_CHARS for ch in label)


def is_valid_domain(token):
    """Check the token has at least two labels and every label is valid."""
    labels = token.split(".")
    if len(labels) < 2:
        return False
    return all(is_valid_label(label) for label in labels)


def _reject_reason(token):
    """Name the rule a candidate token breaks, or None if it is a valid domain."""
    if not token:
        return "empty_token"
    if "/" in token or ":" in token:
        return "url_or_port"
    if token.lower() in RESERVED_NAMES:
        return "reserved_name"
    if "*" in token or "@" in token:
        return "wildcard_or_email"
    if not is_valid_domain(token):
        return "invalid_domain"
    return None


def clean_token(token, skip_reasons=None):
    """Return the lowercased domain for a candidate token, or None if it is rejected."""
    token = token.strip(".")
    reason = _reject_reason(token)
    if reason is not None:
        if skip_reasons is not None:
            skip_reasons[reason] += 1
        return None
    return token.lower()


def strip_comment(line):
    """Drop carriage returns, surrounding whitespace and any inline '#' comment."""
    line = line.replace("\r", "").strip(FIELD_SEPARATORS)
    return line.split("#", 1)[0].rstrip(FIELD_SEPARATORS)


def extract_domains(text, skip_reasons=None):
    """Extract the set of valid domains from hosts-format or plain-list text.

    A leading sentinel address (0.0.0.0, 127.0.0.1, ::, ::1) is skipped;
    every remaining field on the line is a domain candidate.
    """
    domains = set()
    for line in text.split("\n"):
        line = strip_comment(line)
        if not line:
            if skip_reasons is not None:
                skip_reasons["empty_line"] += 1
            continue
        fields = FIELD_SPLIT.split(line)
        start = 1 if fields[0] in SENTINEL_ADDRESSES else 0
        for field in fields[start:]:
            domain = clean_token(field, skip_reasons)
            if domain is not None:
                domains.add(domain)
    return domains


def decode(content):
    """Decode raw list content as UTF-8, replacing undecodable bytes."""
    if isinstance(content, str):
        return content
    return content.decode("utf-8", errors="replace")


def consolidate(contents, skip_reasons=None):
    """Merge the domains of every retrieved source into one sorted, unique list."""
    domains = set()
    for content in contents:
        domains |= extract_domains(decode(content), skip_reasons)
    # Domains are ASCII, so code point order is byte order
    return sorted(domains)


def utc_timestamp(now=None):
    """Format the given (or current) time as an ISO-8601 UTC timestamp."""
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(datetime.timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%SZ")


def render_hosts(domains, sources, timestamp):
    """Build the hosts document: header, echoed sources, then one line per domain."""
    header_lines = [
        f"# Consolidated Pi-hole hosts generated on {timestamp}",
        "# Sources:",
    ]
    header_lines.extend(f"# {source}" for source in sources)
    body = [f"0.0.0.0 {domain}" for domain in domains]
    return "\n".join(header_lines + body) + "\n"


def _output_mode(path):
    """Keep the destination's permissions, or use the umask default for a new file."""
    try:
        return os.stat(path).st_mode & 0o777
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def write_hosts(path, document):
    """Write the document next to its destination, then move it into place.

    The destination is left untouched if anything fails before the rename.
    """
    directory = os.path.dirname(os.path.abspath(path))
    try:
        fd, tmp = tempfile.mkstemp(prefix=".consolidate-", suffix=".tmp", dir=directory)
    except OSError as e:
        raise OutputWriteError(f"Cannot write {path}: {e}") from e
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as outfile:
            outfile.write(document)
        os.chmod(tmp, _output_mode(path))
        os.replace(tmp, path)
    except OSError as e:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise OutputWriteError(f"Cannot write {path}: {e}") from e


def main(argv=None, fetch=fetch_source, now=None):
    """Run the consolidation and return the process exit code."""
    if argv is None:
        argv = sys.argv
    prog = os.path.basename(argv[0]) if argv else "consolidate-hosts"
    args = argv[1:]
    try:
        if len(args) != 2:
            raise UsageError(f"Usage: {prog} <sources_file> <output_file>")
        sources_file, output_file = args

        sources = read_sources(sources_file)
        contents = load_sources(sources, fetch=fetch)

        skip_reasons = Counter()
        domains = consolidate(contents, skip_reasons)

        document = render_hosts(domains, sources, utc_timestamp(now))
        write_hosts(output_file, document)
    except ConsolidateError as e:
        logger.error("%s", e)
        return e.exit_code

    print(f"Wrote {len(domains)} unique domains to: {output_file}")
    if logger.isEnabledFor(logging.DEBUG):
        for reason, count in sorted(skip_reasons.items()):
            logger.debug("Skipped %s: %d", reason, count)
    return EXIT_OK


def run():
    """Console script entry point."""
    level = getattr(logging, LOG_LEVEL, None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s - %(message)s",
    )
    sys.exit(main())


if __name__ == "__main__":
    run()
