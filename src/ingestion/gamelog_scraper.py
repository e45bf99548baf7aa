"""
Basketball Reference Game Log Scraper
Resolves a team's roster, then pulls each player's basic and advanced game logs
and aligns them into per-game records.
"""
import argparse
import json
import logging
import re
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Iterable, Sequence, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from curl_cffi import requests

from src.alignment.game_record_aligner import (
    ABSENT,
    LOCATION_KEY,
    PRESENCE_KEY,
    AlignedRecord,
    AlignmentResult,
    MalformedInputError,
    align,
)
from src.ingestion.settings import ScraperSettings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


BASIC_STATS = [
    "pts", "ast", "trb", "orb", "drb", "stl", "blk", "tov", "pf", "game_score",
    "fga", "fg3a", "fta", "fg_pct", "fg3_pct", "ft_pct",
    "opp_id", "mp", "game_season", "date_game", "game_location",
]

ADVANCED_STATS = [
    "ts_pct", "efg_pct", "orb_pct", "drb_pct", "trb_pct", "ast_pct",
    "stl_pct", "blk_pct", "tov_pct", "usg_pct", "off_rtg", "def_rtg",
    "gmsc", "bpm",
    # needed to align and cross-check against the basic log
    "game_season", "date_game",
]

BASIC_TABLE_ID = "pgl_basic"
ADVANCED_TABLE_ID = "pgl_advanced"
ROSTER_SELECTOR = "#roster tbody tr td:nth-child(2) a"

# plain decimal notation only; no 'nan', 'inf', exponents or '1_000'
INTEGER_PATTERN = re.compile(r'^[+-]?\d+$')
DECIMAL_PATTERN = re.compile(r'^[+-]?(\d+\.\d*|\.\d+)$')


class ScrapeError(Exception):
    """Base class for failures while fetching a player's pages."""


class RosterNotFoundError(ScrapeError):
    """Raised when a team roster page is missing or has no players."""


class PlayerNotFoundError(ScrapeError):
    """Raised when a player is not on the team roster."""


class PageFetchError(ScrapeError):
    """Raised when a game-log page could not be downloaded."""


@dataclass(frozen=True)
class FetchFailure:
    """Why one stage of a player's scrape did not produce data"""
    stage: str
    error_type: str
    message: str

    @classmethod
    def from_exception(cls, stage: str, exc: Exception) -> "FetchFailure":
        return cls(stage=stage, error_type=type(exc).__name__, message=str(exc))

    def __str__(self) -> str:
        return f"{self.stage}: {self.error_type}: {self.message}"


def parse_stat(value: Any) -> Any:
    """
    Consumer-side conversion of a raw cell.

    '12' -> 12, '.585' -> 0.585, '+5' -> 5; blank or absent -> None;
    anything else ('LAL', '36:12', '2024-10-22', '@') is returned unchanged.
    """
    if value is ABSENT or value is None:
        return None
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        return None
    if INTEGER_PATTERN.match(text):
        return int(text)
    if DECIMAL_PATTERN.match(text):
        return float(text)
    return text


def average_against_opponent(
    records: Iterable[AlignedRecord],
    stat: str,
    opponent: str,
    opponent_key: str = "opp_id",
) -> float:
    """Mean of a numeric stat over the games played against one opponent (0 when none)"""
    total = 0.0
    count = 0
    for record in records:
        if record.get(opponent_key) != opponent:
            continue
        value = parse_stat(record.get(stat))
        if isinstance(value, (int, float)):
            total += value
            count += 1
    return total / count if count > 0 else 0.0


@dataclass(frozen=True)
class PlayerFetchResult:
    """Everything scraped for one player; `ok` tells a usable result from a failure"""
    name: str
    team: str
    url: Optional[str] = None
    basic: Optional[AlignmentResult] = None
    advanced: Optional[AlignmentResult] = None
    errors: Tuple[FetchFailure, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.basic is not None

    @property
    def complete(self) -> bool:
        return (
            self.ok
            and self.advanced is not None
            and not self.basic.is_partial
            and not self.advanced.is_partial
        )

    def games(self) -> List[Dict[str, Any]]:
        """
        Basic and advanced stats merged per game.

        Rows are paired by position when both pages list the same game numbers;
        otherwise advanced rows are matched on game number and unmatched games
        get None for the advanced stats.
        """
        if self.basic is None:
            return []
        games = [record.to_dict() for record in self.basic]
        if self.advanced is None:
            return games

        advanced_rows = [record.to_dict() for record in self.advanced]
        basic_keys = self.basic.column(self.basic.presence_key)
        advanced_keys = self.advanced.column(self.advanced.presence_key)

        if basic_keys == advanced_keys:
            paired = advanced_rows
        else:
            logger.warning(
                f"{self.name}: basic log has {len(basic_keys)} games, advanced log has "
                f"{len(advanced_keys)}; matching on {self.basic.presence_key}"
            )
            by_key = dict(zip(advanced_keys, advanced_rows))
            paired = [by_key.get(key, {}) for key in basic_keys]

        extra = [c for c in self.advanced.columns if c not in self.basic.columns]
        for game, adv in zip(games, paired):
            for stat in extra:
                game[stat] = adv.get(stat)
        return games

    def to_dict(self, numeric: bool = True) -> Dict[str, Any]:
        """Convert to dictionary, optionally parsing numeric cells"""
        games = self.games()
        if numeric:
            games = [
                {k: (v if k == "location" else parse_stat(v)) for k, v in game.items()}
                for game in games
            ]
        data = {
            'name': self.name,
            'team': self.team,
            'url': self.url,
            'ok': self.ok,
            'games': games,
            'errors': [str(e) for e in self.errors],
        }
        partial = []
        for page, result in (('basic', self.basic), ('advanced', self.advanced)):
            if result is not None:
                partial.extend(
                    {'page': page, 'column': p.column, 'missing': p.missing}
                    for p in result.partial
                )
        if partial:
            data['partial'] = partial
        return data


def roster_key(name: str) -> str:
    """'LeBron James' and 'lebron-james' both become 'lebron-james'"""
    return re.sub(r'[\s-]+', '-', name.strip()).lower()


class BasketballReferenceScraper:
    """
    Game log scraper built on curl_cffi browser impersonation
    """

    BASE_URL = "https://www.basketball-reference.com"

    def __init__(self, settings: Optional[ScraperSettings] = None, session=None):
        """Initialize scraper; a session may be injected, otherwise one is made per thread"""
        self.settings = settings or ScraperSettings.from_env()
        self._session = session
        self._sessions = {}
        self._session_lock = threading.Lock()
        self._rate_lock = threading.Lock()
        self.last_request_time = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def session(self):
        if self._session is not None:
            return self._session
        thread_id = threading.get_ident()
        with self._session_lock:
            if thread_id not in self._sessions:
                self._sessions[thread_id] = requests.Session(impersonate=self.settings.impersonate)
            return self._sessions[thread_id]

    def _close_sessions(self, keep_current: bool = False):
        """Close sessions this scraper created (an injected session is left alone)"""
        current = threading.get_ident()
        with self._session_lock:
            for thread_id in list(self._sessions):
                if keep_current and thread_id == current:
                    continue
                self._sessions.pop(thread_id).close()

    def close(self):
        self._close_sessions()

    def _rate_limit(self):
        """Enforce minimum delay between requests across all worker threads"""
        with self._rate_lock:
            elapsed = time.time() - self.last_request_time
            if elapsed < self.settings.request_delay:
                sleep_time = self.settings.request_delay - elapsed
                logger.debug(f"Rate limiting: sleeping for {sleep_time:.2f}s")
                time.sleep(sleep_time)
            self.last_request_time = time.time()

    def _make_request(self, url: str, max_retries: Optional[int] = None):
        """Make HTTP request with exponential backoff"""
        if max_retries is None:
            max_retries = self.settings.max_retries

        for attempt in range(max_retries):
            try:
                self._rate_limit()
                logger.info(f"Fetching: {url} (attempt {attempt + 1}/{max_retries})")

                response = self.session.get(url, timeout=self.settings.timeout)

                if response.status_code == 404:
                    logger.error(f"Page not found: {url}")
                    return None
                elif response.status_code == 403:
                    wait_time = 2 ** attempt * 2
                    logger.warning(f"403 Forbidden. Retrying in {wait_time}s...")
                    time.sleep(wait_time)
                    continue

                response.raise_for_status()
                return response

            except Exception as e:
                logger.error(f"Request failed for {url}: {e}")
                if attempt < max_retries - 1:
                    time.sleep(2 ** attempt)

        logger.error(f"Failed to fetch {url} after {max_retries} attempts")
        return None

    def _construct_team_url(self, team: str, season: int) -> str:
        """Construct roster page URL from team abbreviation"""
        return f"{self.BASE_URL}/teams/{team.upper()}/{season}.html"

    def _gamelog_url(self, player_href: str, season: int) -> str:
        """Player page link -> that player's game log for a season"""
        player_url = urljoin(self.BASE_URL, player_href)
        if player_url.endswith('.html'):
            player_url = player_url[:-len('.html')]
        return f"{player_url}/gamelog/{season}"

    @staticmethod
    def _advanced_gamelog_url(gamelog_url: str) -> str:
        return gamelog_url.replace('/gamelog/', '/gamelog-advanced/')

    def _find_table(self, html_text: str, table_id: str):
        """
        Locate a table by id, including tables Basketball Reference hides in
        HTML comments
        """
        soup = BeautifulSoup(html_text, 'html.parser')
        table = soup.find('table', id=table_id)
        if table is not None:
            return table

        if f'id="{table_id}"' not in html_text:
            return None

        logger.debug(f"Table '{table_id}' is inside a comment; uncommenting")
        uncommented = html_text.replace('<!--', '').replace('-->', '')
        return BeautifulSoup(uncommented, 'html.parser').find('table', id=table_id)

    def parse_roster(self, html_text: str, season: int) -> Dict[str, str]:
        """
        Extract player names and game log URLs from a team page roster table.

        Returns:
            player name -> game log URL, in roster order
        """
        soup = BeautifulSoup(html_text, 'html.parser')
        links = soup.select(ROSTER_SELECTOR)
        if not links:
            table = self._find_table(html_text, 'roster')
            if table is not None:
                links = table.select("tbody tr td:nth-child(2) a")

        roster = {}
        for link in links:
            name = ' '.join(link.get_text().split())
            href = link.get('href')
            if not name or not href:
                continue
            roster[name] = self._gamelog_url(href, season)

        logger.debug(f"Parsed {len(roster)} roster entries")
        return roster

    def get_roster(self, team: str, season: Optional[int] = None) -> Dict[str, str]:
        """
        Fetch a team's roster.

        Raises:
            RosterNotFoundError: page missing or no players on it
        """
        season = season or self.settings.season
        url = self._construct_team_url(team, season)
        response = self._make_request(url)
        if not response:
            raise RosterNotFoundError(f"Could not fetch roster page for {team.upper()} {season}: {url}")

        roster = self.parse_roster(response.text, season)
        if not roster:
            raise RosterNotFoundError(f"No players found on roster page {url}")

        logger.info(f"Found {len(roster)} players on {team.upper()} {season} roster")
        return roster

    @staticmethod
    def resolve_player_url(roster: Dict[str, str], player_name: str) -> str:
        """Look up a player's game log URL; 'LeBron James' and 'LeBron-James' both match"""
        wanted = roster_key(player_name)
        for name, url in roster.items():
            if roster_key(name) == wanted:
                return url
        raise PlayerNotFoundError(f"Player {player_name} not found on roster")

    def extract_columns(
        self,
        html_text: str,
        stats: Sequence[str],
        table_id: Optional[str] = None,
    ) -> Dict[str, List[str]]:
        """
        Collect the trimmed text of the td[data-stat=...] cells, per stat.

        Scoped to the table with table_id when the page has it; otherwise the
        whole document is searched. Every data row yields one value per stat,
        None where the row has no such cell (inactive rows span a single
        'reason' cell), so columns stay row-aligned and the aligner can tell
        a missing cell from a blank one. A stat with no cells
        anywhere comes back empty.
        """
        scope = self._find_table(html_text, table_id) if table_id else None
        if scope is None:
            if table_id:
                logger.debug(f"Table '{table_id}' not found; searching whole page")
            scope = BeautifulSoup(html_text, 'html.parser')

        rows = [row for row in scope.find_all('tr') if row.find('td')]
        columns = {stat: [] for stat in stats}
        seen = set()
        for row in rows:
            for stat in stats:
                cell = row.find('td', attrs={'data-stat': stat})
                if cell is None:
                    columns[stat].append(None)
                else:
                    seen.add(stat)
                    columns[stat].append(cell.get_text(strip=True))

        for stat in stats:
            if stat not in seen:
                logger.warning(f"No cells found for data-stat '{stat}'")
                columns[stat] = []
        return columns

    def _scrape_page(
        self,
        url: str,
        stats: Sequence[str],
        table_id: str,
        location_key: Optional[str],
    ) -> AlignmentResult:
        response = self._make_request(url)
        if not response:
            raise PageFetchError(f"Could not fetch {url}")

        columns = self.extract_columns(response.text, stats, table_id=table_id)
        return align(columns, presence_key=PRESENCE_KEY, location_key=location_key)

    def scrape_player(
        self,
        team: str,
        player_name: str,
        roster: Optional[Dict[str, str]] = None,
        season: Optional[int] = None,
    ) -> PlayerFetchResult:
        """
        Scrape basic and advanced game logs for a single player.

        Never raises: failures are recorded on the returned result so one
        player cannot stop the rest of a batch.
        """
        season = season or self.settings.season
        team = team.upper()
        logger.info(f"Scraping {player_name} ({team} {season})")

        try:
            if roster is None:
                roster = self.get_roster(team, season)
            url = self.resolve_player_url(roster, player_name)
        except ScrapeError as e:
            logger.error(f"Error resolving {player_name}: {e}")
            return PlayerFetchResult(
                name=player_name, team=team,
                errors=(FetchFailure.from_exception('roster', e),)
            )

        try:
            basic = self._scrape_page(url, BASIC_STATS, BASIC_TABLE_ID, LOCATION_KEY)
        except (ScrapeError, MalformedInputError) as e:
            logger.error(f"Failed to extract basic stats for {player_name}: {e}")
            return PlayerFetchResult(
                name=player_name, team=team, url=url,
                errors=(FetchFailure.from_exception('basic', e),)
            )
        except Exception as e:
            logger.error(f"Error scraping {player_name}: {e}", exc_info=True)
            return PlayerFetchResult(
                name=player_name, team=team, url=url,
                errors=(FetchFailure.from_exception('basic', e),)
            )

        errors = []
        advanced = None
        advanced_url = self._advanced_gamelog_url(url)
        try:
            advanced = self._scrape_page(advanced_url, ADVANCED_STATS, ADVANCED_TABLE_ID, None)
        except (ScrapeError, MalformedInputError) as e:
            logger.warning(f"Advanced stats unavailable for {player_name}: {e}")
            errors.append(FetchFailure.from_exception('advanced', e))
        except Exception as e:
            logger.error(f"Error scraping advanced stats for {player_name}: {e}", exc_info=True)
            errors.append(FetchFailure.from_exception('advanced', e))

        logger.info(f"Successfully scraped {player_name}: {len(basic)} games")
        return PlayerFetchResult(
            name=player_name,
            team=team,
            url=url,
            basic=basic,
            advanced=advanced,
            errors=tuple(errors),
        )

    def scrape_team(
        self,
        team: str,
        players: Optional[Sequence[str]] = None,
        season: Optional[int] = None,
        max_workers: Optional[int] = None,
    ) -> List[PlayerFetchResult]:
        """
        Scrape several players of one team (the whole roster when players is None).

        Results come back in roster/request order. With max_workers > 1 the
        players are fetched concurrently; requests still share the rate limit.
        """
        season = season or self.settings.season
        max_workers = max_workers or self.settings.max_workers
        team = team.upper()

        try:
            roster = self.get_roster(team, season)
        except RosterNotFoundError as e:
            logger.error(str(e))
            names = list(players or [])
            return [
                PlayerFetchResult(
                    name=name, team=team,
                    errors=(FetchFailure.from_exception('roster', e),)
                )
                for name in names
            ]

        names = list(players) if players else list(roster)
        logger.info(f"Scraping {len(names)} players from {team} with {max_workers} worker(s)")

        if max_workers == 1:
            return [self.scrape_player(team, name, roster=roster, season=season) for name in names]

        results: List[Optional[PlayerFetchResult]] = [None] * len(names)
        try:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                future_to_index = {
                    executor.submit(self.scrape_player, team, name, roster, season): i
                    for i, name in enumerate(names)
                }
                for future in as_completed(future_to_index):
                    i = future_to_index[future]
                    results[i] = future.result()
        finally:
            # worker threads are gone once the executor exits
            self._close_sessions(keep_current=True)
        return results


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Pull Basketball Reference game logs for a team's players"
    )
    parser.add_argument("team", help="team abbreviation, e.g. LAL")
    parser.add_argument("players", nargs="*",
                        help="player names (default: whole roster)")
    parser.add_argument("--season", type=int, default=None,
                        help="season end year (default: BREF_SEASON or 2025)")
    parser.add_argument("--workers", type=int, default=None,
                        help="players fetched concurrently (default: BREF_MAX_WORKERS or 1)")
    parser.add_argument("--raw", action="store_true",
                        help="keep cell values as scraped text")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main execution function"""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = ScraperSettings.from_env().override(season=args.season, max_workers=args.workers)
    except ValueError as e:
        parser.error(str(e))
    logging.getLogger().setLevel(settings.log_level_value)

    logger.info(f"Starting game log scraper for {args.team.upper()} {settings.season}")
    scraper = BasketballReferenceScraper(settings=settings)
    try:
        results = scraper.scrape_team(args.team, players=args.players or None)
    finally:
        scraper.close()

    successful = sum(1 for r in results if r.ok)
    failed = len(results) - successful
    for result in results:
        if not result.ok:
            logger.warning(f"Failed to scrape {result.name}: {'; '.join(map(str, result.errors))}")
        elif result.errors:
            logger.warning(f"Partial data for {result.name}: {'; '.join(map(str, result.errors))}")

    print(json.dumps([r.to_dict(numeric=not args.raw) for r in results], indent=2))
    logger.info(f"Scraping complete: {successful} successful, {failed} failed")

    return 0 if successful else 1


if __name__ == "__main__":
    sys.exit(main())
