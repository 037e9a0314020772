import io
import os
import sys
import time
import tarfile
import zipfile
import zlib
import argparse
import threading
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass
from collections import namedtuple
from typing import NamedTuple, Optional
from concurrent.futures import ThreadPoolExecutor

import rarfile
from PIL import Image
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, BarColumn, TextColumn, TimeRemainingColumn, SpinnerColumn
from rich.table import Table
from rich.text import Text

# Default Constants (can be overwritten by args)
DEFAULT_QUALITY = 85
DEFAULT_MAX_HEIGHT = 1440
DEFAULT_THREADS = os.cpu_count() or 4
SCRIPT_VERSION = "1.0"

# Fixed Constants
IMAGE_EXTS = (".jpeg", ".jpg", ".png", ".webp", ".bmp", ".gif", ".tga")
COMIC_EXTS = (".cbr", ".cbz", ".cbt", ".rar", ".zip", ".tar")
TARGET_SUFFIX = ".webp"
OUTPUT_MARKER = "[resized]"
OUTPUT_SUFFIX = ".cbt"
ENTRY_MODE = 0o666

# Global output settings - will be set in main()
console = Console()
VERBOSE = False
QUIET = False
LOG_FILE = None

_log_lock = threading.Lock()


class ResizeComicError(Exception):
    """Base class for conversion errors."""


class ArchiveError(ResizeComicError):
    """The source archive cannot be opened or read. Fatal for that archive."""


class CodecError(ResizeComicError):
    """One page could not be decoded or encoded. Never fatal for the archive."""


class WriterClosedError(ResizeComicError):
    """The output archive was already finalized."""


def log(msg, level="info", msg_type="general"):
    """Log messages to console and log file.

    Errors are always printed. Per-entry messages (msg_type "entry" or
    "skipped") only reach the console in verbose mode; everything else is
    printed unless quiet. Markup is stripped in the log file.
    """
    if level == "error" or (not QUIET and (msg_type == "general" or VERBOSE)):
        console.print(msg)

    if LOG_FILE:
        plain = Text.from_markup(msg).plain
        with _log_lock:
            with open(LOG_FILE, 'a', encoding='utf-8') as f:
                f.write(plain + "\n")


# --- Data Model ---

class SourceEntry(NamedTuple):
    name: str
    modified_at: datetime
    payload: bytes


class EncodedRecord(NamedTuple):
    name: str
    modified_at: datetime
    payload: bytes


class ResizeDecision(NamedTuple):
    target_height: Optional[int] = None

    @property
    def unchanged(self):
        return self.target_height is None


class EntryResult(NamedTuple):
    name: str
    ok: bool
    error: Optional[str] = None


class ArchiveReport(NamedTuple):
    source: Path
    target: Path
    converted: int
    failed: int
    skipped: int
    elapsed: float


@dataclass(frozen=True)
class Config:
    """Run-wide conversion settings, shared read-only by every worker."""
    quality: int = DEFAULT_QUALITY
    max_height: int = DEFAULT_MAX_HEIGHT
    workers: Optional[int] = None

    def __post_init__(self):
        if not 0 <= self.quality <= 100:
            raise ValueError(f"quality must be between 0 and 100, got {self.quality}")
        if self.max_height < 1:
            raise ValueError(f"max height must be positive, got {self.max_height}")
        if self.workers is not None and self.workers < 1:
            raise ValueError(f"worker count must be positive, got {self.workers}")

    @property
    def pool_size(self):
        return self.workers or DEFAULT_THREADS


# --- Entry Filter ---

def _suffix(name):
    # Archive member names always use "/" but tolerate "\" from Windows tools.
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    return os.path.splitext(base)[1].lower()


def is_image(name):
    return _suffix(name) in IMAGE_EXTS


def is_comic_archive(name):
    return _suffix(str(name)) in COMIC_EXTS


def replace_suffix(name, suffix):
    """Swap the last suffix of an entry name, keeping the stem and any folder part."""
    old = _suffix(name)
    if old:
        name = name[:-len(old)]
    return name + suffix


# --- Resize Policy ---

def decide_resize(height, max_height):
    if height > max_height:
        return ResizeDecision(max_height)
    return ResizeDecision()


# --- Image Codec ---

class DecodedImage:
    """A decoded page. Wraps the Pillow image the codec produced."""

    def __init__(self, image):
        self.image = image

    @property
    def width(self):
        return self.image.width

    @property
    def height(self):
        return self.image.height

    @property
    def channels(self):
        return len(self.image.getbands())

    @property
    def pixels(self):
        return self.image.tobytes()


def decode_image(data):
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except Image.DecompressionBombError as e:
        raise CodecError(f"refusing oversized image: {e}") from e
    except (OSError, ValueError, SyntaxError, EOFError) as e:
        raise CodecError(f"cannot decode image: {e}") from e
    return DecodedImage(img)


def _webp_ready(img):
    if img.mode in ("RGB", "RGBA"):
        return img
    if img.mode in ("LA", "PA") or (img.mode == "P" and "transparency" in img.info):
        return img.convert("RGBA")
    return img.convert("RGB")


def encode_image(image, quality, target_height=None):
    img = image.image
    buf = io.BytesIO()
    try:
        img = _webp_ready(img)
        if target_height is not None and target_height != img.height:
            width = max(1, round(img.width * target_height / img.height))
            img = img.resize((width, target_height), Image.Resampling.LANCZOS)
        img.save(buf, "WEBP", quality=quality)
    except (OSError, ValueError) as e:
        raise CodecError(f"cannot encode webp: {e}") from e
    return buf.getvalue()


Codec = namedtuple("Codec", ["decode", "encode"])
DEFAULT_CODEC = Codec(decode_image, encode_image)


# --- Archive Source ---

_READ_ERRORS = (OSError, EOFError, RuntimeError, NotImplementedError, zlib.error,
                zipfile.BadZipFile, tarfile.TarError, rarfile.Error)


def _entry_time(date_time):
    # Some zip writers store all-zero dates.
    try:
        return datetime(*date_time)
    except ValueError:
        return datetime(1980, 1, 1)


def _member_time(mtime):
    # Tar mtimes are unchecked; anything datetime cannot hold gets the zip epoch.
    try:
        return datetime.fromtimestamp(mtime)
    except (ValueError, OverflowError, OSError):
        return datetime(1980, 1, 1)


class ArchiveSource:
    """Sequential reader over the entries of a zip, tar or rar archive.

    The container type is detected from the file content, so a mislabelled
    .cbr that is really a zip is still read.
    """

    def __init__(self, path):
        self.path = Path(path)
        try:
            if tarfile.is_tarfile(self.path):
                self._archive = tarfile.open(self.path, "r:*")
                self.kind = "tar"
            elif zipfile.is_zipfile(self.path):
                self._archive = zipfile.ZipFile(self.path)
                self.kind = "zip"
            elif rarfile.is_rarfile(str(self.path)):
                self._archive = rarfile.RarFile(str(self.path))
                self.kind = "rar"
            else:
                raise ArchiveError(f"not a recognized archive: {self.path}")
        except _READ_ERRORS as e:
            raise ArchiveError(f"cannot open {self.path}: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self._archive.close()

    def entries(self):
        """Yield SourceEntry values one at a time, skipping directories."""
        try:
            if self.kind == "tar":
                for member in self._archive:
                    if not member.isfile():
                        continue
                    data = self._archive.extractfile(member).read()
                    yield SourceEntry(member.name, _member_time(member.mtime), data)
            else:
                for info in self._archive.infolist():
                    if info.is_dir():
                        continue
                    data = self._archive.read(info)
                    yield SourceEntry(info.filename, _entry_time(info.date_time), data)
        except _READ_ERRORS as e:
            raise ArchiveError(f"read entry failed in {self.path}: {e}") from e


# --- Synchronized Archive Writer ---

class ArchiveWriter:
    """Single tar output stream shared by all conversion workers.

    Each append writes one header and its payload while holding the lock, so
    entries from concurrent workers never interleave. Entry order follows
    completion order, not source order.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._file = open(self.path, "xb")
        self._tar = tarfile.open(fileobj=self._file, mode="w")
        self._lock = threading.Lock()
        self._closed = False
        self.count = 0

    def append(self, record):
        info = tarfile.TarInfo(record.name)
        info.size = len(record.payload)
        info.mtime = int(record.modified_at.timestamp())
        info.mode = ENTRY_MODE
        with self._lock:
            if self._closed:
                raise WriterClosedError(f"{self.path} is already finalized")
            self._tar.addfile(info, io.BytesIO(record.payload))
            self.count += 1

    def finalize(self):
        """Write the tar trailer and close the file. Valid exactly once."""
        with self._lock:
            if self._closed:
                raise WriterClosedError(f"{self.path} is already finalized")
            self._closed = True
            try:
                self._tar.close()
            finally:
                self._file.close()

    def abort(self):
        """Close the file without a trailer. The partial output is left as is."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._file.close()

    @property
    def closed(self):
        return self._closed


# --- Conversion Worker ---

def convert_entry(entry, config, writer, codec=DEFAULT_CODEC):
    """Decode, resize, encode and append one page.

    Failures are reported by entry name and returned, never raised, so one
    broken page cannot stop the rest of the archive.
    """
    try:
        image = codec.decode(entry.payload)
    except CodecError as e:
        log(f"[red]❌ Decode failed: {escape(entry.name)} ({escape(str(e))})", level="error")
        return EntryResult(entry.name, False, str(e))

    decision = decide_resize(image.height, config.max_height)
    try:
        payload = codec.encode(image, config.quality, decision.target_height)
    except CodecError as e:
        log(f"[red]❌ Encode webp failed: {escape(entry.name)} ({escape(str(e))})", level="error")
        return EntryResult(entry.name, False, str(e))

    record = EncodedRecord(replace_suffix(entry.name, TARGET_SUFFIX), entry.modified_at, payload)
    try:
        writer.append(record)
    except (OSError, tarfile.TarError) as e:
        log(f"[red]❌ Write entry failed: {escape(writer.path.name)}, name: {escape(entry.name)} ({escape(str(e))})", level="error")
        return EntryResult(entry.name, False, str(e))

    if decision.unchanged:
        log(f"   🖼️  {escape(record.name)} ({image.width}x{image.height}, {len(payload) / 1024:.1f} KB)", msg_type="entry")
    else:
        log(f"   🖼️  {escape(record.name)} ({image.width}x{image.height} → height {decision.target_height}, "
            f"{len(payload) / 1024:.1f} KB)", msg_type="entry")
    return EntryResult(entry.name, True)


# --- Pipeline Orchestrator ---

def convert_archive(src, target, config, codec=DEFAULT_CODEC):
    """Convert one source archive into a new .cbt at target.

    Raises ArchiveError when the source cannot be read, FileExistsError when
    target already exists and OSError when the output cannot be finalized.
    Page-level failures only show up in the returned report.
    """
    start_time = time.monotonic()
    converted, failed, skipped = 0, 0, 0

    with ArchiveSource(src) as source:
        writer = ArchiveWriter(target)
        # Caps the pages that are read but not yet written.
        slots = threading.BoundedSemaphore(config.pool_size * 2)
        futures = {}
        try:
            with ThreadPoolExecutor(max_workers=config.pool_size) as executor:
                for entry in source.entries():
                    if not is_image(entry.name):
                        log(f"   ⏩ Skip: {escape(entry.name)}", msg_type="skipped")
                        skipped += 1
                        continue
                    slots.acquire()
                    future = executor.submit(convert_entry, entry, config, writer, codec)
                    future.add_done_callback(lambda _: slots.release())
                    futures[future] = entry.name
        except Exception:
            writer.abort()
            raise

    # The executor has joined every worker here, nothing is left to write.
    for future, name in futures.items():
        try:
            result = future.result()
        except Exception as e:
            log(f"[red]❌ Error processing page {escape(name)} in thread: {escape(str(e))}", level="error")
            failed += 1
            continue
        if result.ok:
            converted += 1
        else:
            failed += 1

    writer.finalize()
    return ArchiveReport(Path(src), Path(target), converted, failed, skipped, time.monotonic() - start_time)


# --- Batch Driver ---

def output_path_for(src, target_dir):
    src = Path(src)
    return Path(target_dir) / f"{src.stem}{OUTPUT_MARKER}{OUTPUT_SUFFIX}"


def pack(src, target_dir, config):
    """Convert one archive into target_dir and log its cost."""
    target = output_path_for(src, target_dir)
    log(f"\n[bold]📦 Resizing: {escape(str(src))}[/bold]")
    start_time = time.monotonic()
    try:
        report = convert_archive(src, target, config)
    except Exception:
        log(f"   ⏱️  Cost: {time.monotonic() - start_time:.2f}s (aborted)")
        raise

    msg = f"   ✅ Wrote {report.converted} page(s) to {escape(target.name)}"
    if report.failed:
        msg += f", [red]{report.failed} failed[/red]"
    if report.skipped:
        msg += f", {report.skipped} non-image entries skipped"
    log(f"{msg}. Cost: {report.elapsed:.2f}s")
    return report


def find_comic_archives(src_dir, target_dir):
    """Mirror the sub-directories of src_dir under target_dir and list the archives.

    Returns (archive path, output directory) pairs, collected before any
    conversion so outputs written under src_dir are never picked up.
    """
    src_dir, target_dir = Path(src_dir), Path(target_dir)
    resolved_target = target_dir.resolve()
    jobs = []
    for dirpath, dirnames, filenames in os.walk(src_dir):
        # Never descend into the output tree when it lives inside the source tree.
        dirnames[:] = sorted(d for d in dirnames if (Path(dirpath) / d).resolve() != resolved_target)
        rel = os.path.relpath(dirpath, src_dir)
        out_dir = target_dir if rel == "." else target_dir / rel
        out_dir.mkdir(parents=True, exist_ok=True)
        for filename in sorted(filenames):
            if is_comic_archive(filename):
                jobs.append((Path(dirpath) / filename, out_dir))
    return jobs


def walk_and_pack(src_dir, target_dir, config):
    """Convert every comic archive below src_dir. Returns (reports, failures)."""
    jobs = find_comic_archives(src_dir, target_dir)
    reports, failures = [], []
    if not jobs:
        log(f"No comic archives found in '{escape(str(src_dir))}'.")
        return reports, failures

    log(f"🛠️ Found {len(jobs)} comic archive(s) in '{escape(str(src_dir))}'")
    with Progress(SpinnerColumn(), TextColumn("[cyan]{task.description}[/cyan]"), BarColumn(),
                  TextColumn("{task.completed}/{task.total} archives"), TimeRemainingColumn(),
                  console=console, disable=QUIET) as progress_bar:
        task_id = progress_bar.add_task("Resizing comics...", total=len(jobs))
        for archive_path, out_dir in jobs:
            try:
                reports.append(pack(archive_path, out_dir, config))
            except (ResizeComicError, OSError) as e:
                log(f"[red]❌ Convert failed: {escape(str(archive_path))}, error: {escape(str(e))}", level="error")
                failures.append((archive_path, str(e)))
            progress_bar.update(task_id, advance=1)
    return reports, failures


def print_summary(reports, failures):
    if QUIET:
        return
    table = Table(title="Resize Summary", title_style="bold magenta")
    table.add_column("Archive", style="green", no_wrap=True)
    table.add_column("Pages", style="bold green", justify="right")
    table.add_column("Failed", style="red", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Time", justify="right")
    for report in reports:
        table.add_row(escape(report.target.name), str(report.converted), str(report.failed),
                      str(report.skipped), f"{report.elapsed:.2f}s")
    for archive_path, error in failures:
        table.add_row(escape(Path(archive_path).name), "-", "[bold red]aborted[/bold red]", "-", "-")
    console.print(table)


def main(argv=None):
    global VERBOSE, QUIET, LOG_FILE

    parser = argparse.ArgumentParser(description="Re-encode the pages of comic archives as WebP and pack them into .cbt files.")
    parser.add_argument("src", help="Comic archive, or directory to scan recursively for comic archives")
    parser.add_argument("dest", nargs="?", default=None, help="Output directory (default: the parent directory of src)")

    tuning_group = parser.add_argument_group('Conversion Tuning')
    tuning_group.add_argument("--quality", type=int, default=DEFAULT_QUALITY, choices=range(0, 101), metavar="[0-100]", help=f"WebP quality (default: {DEFAULT_QUALITY})")
    tuning_group.add_argument("--height", type=int, default=DEFAULT_MAX_HEIGHT, help=f"Pages taller than this are downscaled to it (default: {DEFAULT_MAX_HEIGHT})")
    tuning_group.add_argument("--threads", type=int, default=DEFAULT_THREADS, help=f"Number of threads for page conversion (default: {DEFAULT_THREADS})")

    output_group = parser.add_argument_group('Output Control')
    output_group.add_argument("--quiet", "-q", action="store_true", help="Suppress all console output except errors.")
    output_group.add_argument("--verbose", "-v", action="store_true", help="Log every page and every skipped entry.")
    output_group.add_argument("--log-file", default=None, help="Also append all messages to this file.")

    args = parser.parse_args(argv)

    QUIET = args.quiet
    VERBOSE = args.verbose and not args.quiet
    LOG_FILE = args.log_file

    try:
        config = Config(quality=args.quality, max_height=args.height, workers=args.threads)
    except ValueError as e:
        parser.error(str(e))

    src = Path(args.src)
    target_dir = Path(args.dest) if args.dest else src.parent

    log(f"quality: {config.quality} | height: {config.max_height} | threads: {config.pool_size} | version: {SCRIPT_VERSION}")
    start_time = time.monotonic()

    if not src.is_file() and not src.is_dir():
        log(f"[red]❌ CRITICAL: source path is invalid: {escape(str(src))}", level="error")
        return 1

    try:
        target_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        log(f"[red]❌ CRITICAL: cannot create output directory {escape(str(target_dir))}: {escape(str(e))}", level="error")
        return 1

    if src.is_file():
        try:
            pack(src, target_dir, config)
        except (ResizeComicError, OSError) as e:
            log(f"[red]❌ Convert failed: {escape(str(src))}, error: {escape(str(e))}", level="error")
            return 1
        log(f"Cost: {time.monotonic() - start_time:.2f}s")
        return 0

    try:
        reports, failures = walk_and_pack(src, target_dir, config)
    except OSError as e:
        log(f"[red]❌ CRITICAL: walking {escape(str(src))} failed: {escape(str(e))}", level="error")
        return 1

    if reports or failures:
        print_summary(reports, failures)
    log(f"\n🎉 [bold green]Done![/bold green] {len(reports)} archive(s) converted, {len(failures)} failed. "
        f"Cost: {time.monotonic() - start_time:.2f}s")
    if LOG_FILE:
        log(f"Log file written to: {escape(str(Path(LOG_FILE).resolve()))}")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
