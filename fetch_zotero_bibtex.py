# /// script
# requires-python = "==3.12.*"
# dependencies = [
#   "httpx~=0.28.0",
#   "tqdm",
#   "humanize"
# ]
# ///

"""
Builds a BibTeX file for a Zotero collection, honoring citation keys pinned in each item's "Extra" field.

Flow: pages through the collection's top-level items as CSL-JSON, reads any `Citation Key: <key>` line
  from the CSL `note` field, fetches the server-rendered BibTeX for the same items in batches, then
  rewrites keys, entry-types, and a few fields before writing the result.

Usage:
  uv run ./fetch_zotero_bibtex.py --api-key abc123 --library-id 1234567 --coll-key ABCD1234 --out-bib-path "../output/references.bib"

Args (each may also come from the environment -- `INPUT_API-KEY`, `INPUT_API_KEY`, or `API_KEY`, etc):
  --api-key (required)
  --library-id (required)
  --coll-key (required)
  --is-group (optional) -- "true" for a group library; default "false"
  --out-bib-path (optional) -- default "references.bib"
"""

import argparse
import logging
import os
import re
from collections.abc import Iterator, Mapping
from pathlib import Path

import httpx
import humanize
from tqdm import tqdm

## setup logging ----------------------------------------------------
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):  # prevent httpx from logging
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)
        lg.propagate = False  # don't bubble up to root
log = logging.getLogger(__name__)

## constants --------------------------------------------------------
API_BASE: str = 'https://api.zotero.org'
ZOTERO_API_VERSION: str = '3'
USER_AGENT: str = 'zotero-bib-tools/1.0'
PAGE_SIZE: int = 100  # max `limit` the items endpoint allows
BATCH_SIZE: int = 50  # item keys per bibtex request; keeps the url short
DEFAULT_OUT_BIB_PATH: str = 'references.bib'

PINNED_KEY_RX: re.Pattern = re.compile(r'^\s*Citation Key:\s*([^\s#]+)\s*$', re.MULTILINE | re.IGNORECASE)

## CSL item-type -> BibTeX entry-type
TYPE_MAP: dict[str, str] = {
    'article-journal': 'article',
    'article': 'article',
    'book': 'book',
    'chapter': 'incollection',
    'paper-conference': 'inproceedings',
    'thesis': 'thesis',
    'report': 'report',
    'webpage': 'online',
    'post': 'online',
    'post-weblog': 'online',
    'dataset': 'dataset',
    'manuscript': 'unpublished',
}

PROTECTED_FIELDS: tuple[str, ...] = ('title', 'booktitle', 'series', 'number')


class ConfigurationError(Exception):
    """
    Raised when a required input is missing; carries the names of all missing inputs.
    """

    def __init__(self, missing: list[str]) -> None:
        self.missing: list[str] = missing
        super().__init__(f'Missing required input(s): {", ".join(missing)}')


## input helpers ----------------------------------------------------
def resolve_input(name: str, env: Mapping[str, str] | None = None) -> str:
    """
    Returns the value of a CI-style input from the environment, or '' if unset.

    Checks, in order: `INPUT_API-KEY` (what the CI host sets), `INPUT_API_KEY`, then `API_KEY`.
    Empty values count as unset.
    """
    env = os.environ if env is None else env
    upper: str = name.upper()
    underscored: str = upper.replace('-', '_')
    for var in (f'INPUT_{upper}', f'INPUT_{underscored}', underscored):
        value: str = (env.get(var) or '').strip()
        if value:
            return value
    return ''


class Settings:
    """
    Holds the validated run configuration.
    - Requires api-key, library-id, and coll-key; reports all missing ones at once.
    - Treats is-group as true only for "true" (any case).
    - Derives the library namespace ("groups" or "users") from is-group.
    """

    def __init__(
        self, *, api_key: str, library_id: str, coll_key: str, is_group: str = 'false', out_bib_path: str = ''
    ) -> None:
        missing: list[str] = [
            name
            for name, value in (('api-key', api_key), ('library-id', library_id), ('coll-key', coll_key))
            if not (value or '').strip()
        ]
        if missing:
            raise ConfigurationError(missing)
        self.api_key: str = api_key.strip()
        self.library_id: str = library_id.strip()
        self.coll_key: str = coll_key.strip()
        self.is_group: bool = (is_group or '').strip().lower() == 'true'
        self.out_bib_path: Path = Path(out_bib_path or DEFAULT_OUT_BIB_PATH)

    @property
    def library_type(self) -> str:
        return 'groups' if self.is_group else 'users'

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> 'Settings':
        return cls(
            api_key=args.api_key,
            library_id=args.library_id,
            coll_key=args.coll_key,
            is_group=args.is_group,
            out_bib_path=args.out_bib_path,
        )


class UrlBuilder:
    """
    Centralizes construction of the Zotero web-api urls used by the export.
    - Chooses the `users` or `groups` namespace for the library.
    - Builds paged CSL-JSON urls for a collection's top-level items.
    - Builds BibTeX urls for an explicit list of item keys.
    """

    def __init__(self, library_type: str, library_id: str, base: str = API_BASE) -> None:
        self.library_url: str = f'{base}/{library_type}/{library_id}'

    def collection_items_url(self, coll_key: str, start: int) -> str:
        return (
            f'{self.library_url}/collections/{coll_key}/items'
            f'?format=csljson&recursive=1&top=1&limit={PAGE_SIZE}&start={start}'
        )

    def bibtex_url(self, item_keys: list[str]) -> str:
        return f'{self.library_url}/items?format=bibtex&itemKey={",".join(item_keys)}'


def normalize_items(body: object) -> list[dict]:
    """
    Some endpoints return a list; others wrap it as `{"items": [...]}`. Anything else counts as empty.
    """
    if isinstance(body, list):
        return body
    if isinstance(body, dict) and isinstance(body.get('items'), list):
        return body['items']
    return []


def parse_total(header_value: str | None, fallback: int) -> int:
    """
    Parses the `Total-Results` header; falls back to the page's own length when absent or malformed.
    """
    try:
        return int(header_value) if header_value else fallback
    except ValueError:
        return fallback


def chunked(item_keys: list[str], size: int) -> Iterator[list[str]]:
    for i in range(0, len(item_keys), size):
        yield item_keys[i : i + size]


class ApiClient:
    """
    Encapsulates the HTTP calls to the Zotero web-api.
    - Sends the api-version and bearer-auth headers on every request.
    - Asks for JSON explicitly only on the CSL-JSON endpoint.
    - Pages through a collection's top-level items until the server's total is reached.
    - Fetches BibTeX for item keys in bounded batches, one request at a time.
    - Raises `httpx.HTTPStatusError` on any non-2xx response; there is no retry.
    """

    def __init__(self, client: httpx.Client, urls: UrlBuilder, api_key: str) -> None:
        self.client: httpx.Client = client
        self.urls: UrlBuilder = urls
        self.headers: dict[str, str] = {
            'Zotero-API-Version': ZOTERO_API_VERSION,
            'Authorization': f'Bearer {api_key}',
        }

    def get(self, url: str, *, accept_json: bool = False) -> httpx.Response:
        headers: dict[str, str] = dict(self.headers)
        if accept_json:
            headers['Accept'] = 'application/json'
        log.debug(f'trying url, ``{url}``')
        resp: httpx.Response = self.client.get(url, headers=headers)
        resp.raise_for_status()
        return resp

    def fetch_top_level_items(self, coll_key: str) -> list[dict]:
        """
        Returns all top-level CSL-JSON items of the collection, in server order.

        Stops when a page comes back short, or when the accumulated count reaches
          the page's `Total-Results` header.
        Called by: run_export()
        """
        start: int = 0
        all_items: list[dict] = []
        while True:
            url: str = self.urls.collection_items_url(coll_key, start)
            resp: httpx.Response = self.get(url, accept_json=True)
            page: list[dict] = normalize_items(resp.json())
            total: int = parse_total(resp.headers.get('Total-Results'), len(page))
            log.info(f'Fetched {len(page)} items (start={start}, total≈{total})')
            all_items.extend(page)
            if len(page) < PAGE_SIZE or len(all_items) >= total:
                break
            start += len(page)
        return all_items

    def fetch_bibtex(self, item_keys: list[str]) -> str:
        resp: httpx.Response = self.get(self.urls.bibtex_url(item_keys))
        return resp.text

    def fetch_bibtex_blocks(self, item_keys: list[str], batch_size: int = BATCH_SIZE) -> list[str]:
        """
        Returns one raw BibTeX block per batch of item keys, in key order.
        Called by: run_export()
        """
        batches: list[list[str]] = list(chunked(item_keys, batch_size))
        blocks: list[str] = []
        for batch in tqdm(batches, total=len(batches), desc='Fetching bibtex', disable=not batches):
            blocks.append(self.fetch_bibtex(batch))
        return blocks


def assemble_raw_bibtex(blocks: list[str]) -> str:
    """
    Joins per-batch blocks; each non-blank block is trimmed and newline-terminated.
    """
    bib: str = ''
    for block in blocks:
        if block and block.strip():
            if bib and not bib.endswith('\n'):
                bib += '\n'
            bib += block.strip() + '\n'
    return bib


## item-index helpers -----------------------------------------------
def item_key_from_id(csl_id: object) -> str:
    """
    CSL ids look like `1234567/ABCD1234`; the item key is whatever follows the last slash.
    """
    if not isinstance(csl_id, str):
        return ''
    return csl_id.rsplit('/', 1)[-1]


def pinned_key_from_note(note: object) -> str | None:
    """
    Returns the key from a `Citation Key: <key>` line in the CSL note (Zotero's "Extra"), if any.
    """
    if not isinstance(note, str) or not note:
        return None
    match: re.Match | None = PINNED_KEY_RX.search(note)
    return match.group(1) if match else None


class ItemIndex:
    """
    Indexes CSL items by Zotero item key.

    - `item_keys`: keys in fetch order (duplicates kept), used to request BibTeX.
    - `pinned_keys`: item key -> citation key pinned in the note.
    - `type_hints`: item key -> raw CSL type, mapped later through TYPE_MAP.

    Items whose id yields no key are skipped entirely.
    """

    def __init__(self) -> None:
        self.item_keys: list[str] = []
        self.pinned_keys: dict[str, str] = {}
        self.type_hints: dict[str, str] = {}

    @classmethod
    def from_items(cls, csl_items: list[dict]) -> 'ItemIndex':
        index = cls()
        for item in csl_items:
            index.add_item(item)
        if not index.item_keys:
            log.warning('No parent items found. Check API key permissions and collection key.')
        return index

    def add_item(self, item: dict) -> None:
        key: str = item_key_from_id(item.get('id'))
        if not key:
            return
        self.item_keys.append(key)
        pinned: str | None = pinned_key_from_note(item.get('note'))
        if pinned:
            self.pinned_keys[key] = pinned
        csl_type: object = item.get('type')
        if isinstance(csl_type, str) and csl_type:
            self.type_hints[key] = csl_type


class BibRewriter:
    """
    Rewrites server-rendered BibTeX with a fixed sequence of regex passes.
    Order matters; each pass expects the output shape of the one before it.
    """

    HEADER_RX: re.Pattern = re.compile(r'@(\w+)\{([^,]+),')
    JOURNAL_RX: re.Pattern = re.compile(r'\bjournal\s*=\s*\{([^}]+)\}', re.IGNORECASE)
    ACRONYM_RX: re.Pattern = re.compile(r'\b([A-Z]{2,})\b')
    ## one level of nested braces allowed in the value, eg `{Policy {Contribution}}`
    TYPE_FIELD_RX: re.Pattern = re.compile(
        r'(^|\n)(\s*)type\s*=\s*\{((?:[^{}]|\{[^{}]*\})*)\}(\s*,?)', re.MULTILINE | re.IGNORECASE
    )

    def __init__(
        self,
        raw_bib: str,
        pinned_keys: Mapping[str, str] | None = None,
        type_hints: Mapping[str, str] | None = None,
    ) -> None:
        self.raw_bib: str = raw_bib
        self.pinned_keys: Mapping[str, str] = pinned_keys if pinned_keys is not None else {}
        self.type_hints: Mapping[str, str] = type_hints if type_hints is not None else {}
        self.bib: str = raw_bib

    def manage_rewriting(self) -> str:
        """
        Runs all passes and returns the final text.
        Called by: run_export()
        """
        self.rewrite_keys_and_types()
        self.rename_journal_fields()
        self.protect_acronyms()
        self.clean_type_fields()
        return self.bib

    def rewrite_keys_and_types(self) -> None:
        """
        Swaps each entry-header's key for its pinned key, and its type for the mapped CSL type.
        Either falls back to what the server emitted.
        """

        def _replace(match: re.Match) -> str:
            server_type, item_key = match.group(1), match.group(2)
            new_key: str = self.pinned_keys.get(item_key) or item_key
            new_type: str = TYPE_MAP.get(self.type_hints.get(item_key, ''), server_type)
            return f'@{new_type}{{{new_key},'

        self.bib = self.HEADER_RX.sub(_replace, self.bib)
        return

    def rename_journal_fields(self) -> None:
        """
        `journal` becomes `organization` -- biblatex's @online has no journal field.
        Applied to every entry regardless of type, on purpose.
        """
        self.bib = self.JOURNAL_RX.sub(lambda m: f'organization = {{{m.group(1)}}}', self.bib)
        return

    def protect_acronyms(self, fields: tuple[str, ...] = PROTECTED_FIELDS) -> None:
        """
        Double-braces runs of 2+ capitals (eg `{{NASA}}`) inside the given fields so styles don't lowercase them.
        """
        for field in fields:
            field_rx: re.Pattern = re.compile(rf'(\b{field}\s*=\s*\{{)([^}}]+)(\}})', re.IGNORECASE)

            def _protect(match: re.Match) -> str:
                content: str = self.ACRONYM_RX.sub(r'{{\1}}', match.group(2))
                return f'{match.group(1)}{content}{match.group(3)}'

            self.bib = field_rx.sub(_protect, self.bib)
        return

    def clean_type_fields(self) -> None:
        """
        Flattens `type` field values, eg `type = {Policy {Contribution}},` -> `type = {Policy Contribution},`.
        Only matches the field at the start of a line; indentation and trailing comma are kept.
        """

        def _clean(match: re.Match) -> str:
            newline, indent, content, comma = match.groups()
            cleaned: str = re.sub(r'\s+', ' ', content.replace('{', '').replace('}', '')).strip()
            return f'{newline}{indent}type = {{{cleaned}}}{comma}'

        self.bib = self.TYPE_FIELD_RX.sub(_clean, self.bib)
        return

    ## end class BibRewriter


class BibFileWriter:
    """
    Writes the final BibTeX, creating parent directories and overwriting any existing file.
    UTF-8, since author names are often non-ASCII.
    """

    def __init__(self, path: Path) -> None:
        self.path: Path = path

    def write(self, text: str) -> int:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open('w', encoding='utf-8') as fh:
            fh.write(text)
        return self.path.stat().st_size


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - Each flag defaults to the matching CI input / environment variable (see `resolve_input()`).
    - Leaves required-ness to `Settings`, so flags and env vars can be mixed.
    """

    @staticmethod
    def build_parser(env: Mapping[str, str] | None = None) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(description='Export a Zotero collection to BibTeX, honoring pinned citation keys.')
        parser.add_argument('--api-key', default=resolve_input('api-key', env), help='Zotero API key (required)')
        parser.add_argument(
            '--library-id', default=resolve_input('library-id', env), help='Zotero user or group id (required)'
        )
        parser.add_argument('--coll-key', default=resolve_input('coll-key', env), help='Collection key (required)')
        parser.add_argument(
            '--is-group',
            default=resolve_input('is-group', env) or 'false',
            help='"true" if library-id is a group library (default: "false")',
        )
        parser.add_argument(
            '--out-bib-path',
            default=resolve_input('out-bib-path', env) or DEFAULT_OUT_BIB_PATH,
            help=f'Output path (default: {DEFAULT_OUT_BIB_PATH})',
        )
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None, env: Mapping[str, str] | None = None) -> argparse.Namespace:
        return CLI.build_parser(env).parse_args(argv)


def run_export(settings: Settings, client: httpx.Client) -> dict[str, object]:
    """
    Fetches, rewrites, and writes the bibliography; returns a small summary dict.

    Flow:
    - Pages through the collection's top-level CSL-JSON items.
    - Indexes item keys, pinned keys, and CSL types.
    - Fetches BibTeX for the item keys in batches and joins the blocks.
    - Runs the rewrite passes.
    - Writes the output file.

    Called by: main()
    """
    urls = UrlBuilder(settings.library_type, settings.library_id)
    api = ApiClient(client, urls, settings.api_key)

    ## fetch collection items ---------------------------------------
    csl_items: list[dict] = api.fetch_top_level_items(settings.coll_key)
    ## index keys, pins, types --------------------------------------
    index: ItemIndex = ItemIndex.from_items(csl_items)
    ## fetch bibtex -------------------------------------------------
    raw_bib: str = assemble_raw_bibtex(api.fetch_bibtex_blocks(index.item_keys))
    ## rewrite ------------------------------------------------------
    final_bib: str = BibRewriter(raw_bib, index.pinned_keys, index.type_hints).manage_rewriting()
    ## write --------------------------------------------------------
    size: int = BibFileWriter(settings.out_bib_path).write(final_bib)

    summary: dict[str, object] = {
        'out_bib_path': str(settings.out_bib_path),
        'size': size,
        'entries': len(index.item_keys),
        'pinned': len(index.pinned_keys),
    }
    log.info(
        f'Wrote {settings.out_bib_path} ({humanize.naturalsize(size)}) '
        f'with {len(index.item_keys)} entries (pinned: {len(index.pinned_keys)})'
    )
    return summary


def main(argv: list[str] | None = None) -> int:
    """
    Parses inputs, runs the export, and maps failures to an exit code.
    - 0 on success.
    - 2 on missing required inputs (nothing is fetched).
    - 1 on any other failure, including non-2xx responses.
    Called by: dundermain
    """
    args: argparse.Namespace = CLI.parse_args(argv)
    try:
        settings: Settings = Settings.from_args(args)
    except ConfigurationError as exc:
        log.error(str(exc))
        return 2

    timeout: httpx.Timeout = httpx.Timeout(connect=30.0, read=120.0, write=30.0, pool=30.0)
    try:
        with httpx.Client(headers={'user-agent': USER_AGENT}, timeout=timeout) as client:
            run_export(settings, client)
    except httpx.HTTPError as exc:
        log.error(f'Request failed: {exc}')
        return 1
    except Exception as exc:
        log.exception(f'Export failed: {exc}')
        return 1
    return 0

    ## end def main()


if __name__ == '__main__':
    raise SystemExit(main())
