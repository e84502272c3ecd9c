"""Database connection and records for the clustering dashboard - PostgreSQL."""

from typing import Optional, List, Dict, Any, Iterable
from contextlib import contextmanager
from datetime import date
import sqlite3
import uuid
import psycopg

from src.config import config
from src.errors import RecordNotFoundError, ValidationError
from src.logger import app_logger as logger
from src.models import Batch, Period, Profile, Role
from urllib.parse import urlparse, parse_qsl, urlencode, urlunparse, quote

SQLITE_PREFIX = "sqlite:///"

# Columns an admin or the student may change through update_profile
PROFILE_COLUMNS = {
    "email", "nama", "nim", "role", "level_user",
    "nama_wali", "no_wa_wali", "nama_dosen_pembimbing", "no_wa_dosen_pembimbing",
    "tingkat", "kelas",
}

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id VARCHAR(64) PRIMARY KEY,
        email VARCHAR(255) NOT NULL,
        nama VARCHAR(255),
        nim VARCHAR(64) NOT NULL UNIQUE,
        role VARCHAR(32) NOT NULL DEFAULT 'mahasiswa',
        level_user INTEGER NOT NULL DEFAULT 0,
        nama_wali VARCHAR(255),
        no_wa_wali VARCHAR(64),
        nama_dosen_pembimbing VARCHAR(255),
        no_wa_dosen_pembimbing VARCHAR(64),
        tingkat VARCHAR(64),
        kelas VARCHAR(64),
        account_linked BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS periode (
        id VARCHAR(64) PRIMARY KEY,
        nama_periode VARCHAR(255) NOT NULL,
        tahun_ajaran VARCHAR(64),
        semester VARCHAR(64),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS batch (
        id VARCHAR(64) PRIMARY KEY,
        nama_batch VARCHAR(255) NOT NULL,
        tgl_batch DATE,
        id_periode VARCHAR(64) NOT NULL REFERENCES periode(id),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hasil_clustering (
        id VARCHAR(64) PRIMARY KEY,
        id_user VARCHAR(64) REFERENCES users(id) ON UPDATE CASCADE ON DELETE CASCADE,
        id_batch VARCHAR(64) NOT NULL REFERENCES batch(id),
        nim VARCHAR(64) NOT NULL,
        nama_mahasiswa VARCHAR(255),
        tingkat VARCHAR(64),
        kelas VARCHAR(64),
        total_a INTEGER NOT NULL DEFAULT 0,
        jp INTEGER NOT NULL DEFAULT 0,
        kedisiplinan VARCHAR(64),
        cluster VARCHAR(64),
        insight TEXT,
        nilai_matkul TEXT,
        status_pesan VARCHAR(32) NOT NULL DEFAULT 'belum terkirim',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_hasil_clustering_batch ON hasil_clustering(id_batch)",
    "CREATE INDEX IF NOT EXISTS idx_hasil_clustering_user ON hasil_clustering(id_user)",
    "CREATE INDEX IF NOT EXISTS idx_batch_periode ON batch(id_periode)",
]


def new_id() -> str:
    return str(uuid.uuid4())


class Database:
    """Database connection and operations manager for PostgreSQL."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url
        self.connection_params = None
        self.connection = None
        self._params_validated = False
        self._migrations_run = False
        self._using_sqlite_fallback = False

    def _build_connection_params(self) -> Optional[Dict[str, Any]]:
        """Build PostgreSQL connection parameters from config."""
        if self._params_validated and self.connection_params:
            return self.connection_params

        postgres_url = self.database_url or config.postgres_url or config.get('DATABASE_URL')

        if postgres_url and postgres_url.startswith(SQLITE_PREFIX):
            self.connection_params = {'sqlite_path': postgres_url[len(SQLITE_PREFIX):] or ':memory:'}
            self._params_validated = True
            return self.connection_params

        if postgres_url:
            self.connection_params = {'conninfo': self._normalize_conninfo(postgres_url)}
            self._params_validated = True
            return self.connection_params

        host = config.postgres_host or config.get('POSTGRES_HOST')
        port = config.postgres_port or config.get('POSTGRES_PORT', '5432')
        database = config.postgres_database or config.get('POSTGRES_DB')
        username = config.postgres_username or config.get('POSTGRES_USER')
        password = config.postgres_password or config.get('POSTGRES_PASSWORD')

        if not all([host, database, username, password]):
            # Don't fail at init time - will fail on first actual database call
            return None

        self.connection_params = {
            'host': host,
            'port': int(port),
            'dbname': database,
            'user': username,
            'password': password,
            'connect_timeout': 5,
            'sslmode': 'require',
            'options': '-c statement_timeout=5000'
        }
        self._params_validated = True
        return self.connection_params

    def _normalize_conninfo(self, conninfo: str) -> str:
        """Ensure SSL and timeouts are set on URL-style connection strings."""
        parsed = urlparse(conninfo)
        if not parsed.scheme or not parsed.netloc:
            return conninfo

        params = dict(parse_qsl(parsed.query, keep_blank_values=True))
        params.setdefault('sslmode', 'prefer')
        params.setdefault('connect_timeout', '5')
        # psycopg does not accept statement_timeout as a URL param; use options instead.
        statement_timeout = params.pop('statement_timeout', '5000')
        options_value = params.get('options', '').replace('+', ' ')
        timeout_option = f"-c statement_timeout={statement_timeout}"
        if timeout_option not in options_value:
            options_value = f"{options_value} {timeout_option}".strip()
        if options_value:
            params['options'] = options_value

        updated_query = urlencode(params, doseq=True, quote_via=quote)
        return urlunparse(parsed._replace(query=updated_query))

    def connect(self):
        """Establish database connection."""
        if self.connection is not None and not self._is_closed(self.connection):
            return self.connection

        params = self._build_connection_params()
        if not params:
            raise ValueError(
                "PostgreSQL configuration incomplete. Required: POSTGRES_HOST, POSTGRES_DB, "
                "POSTGRES_USER, POSTGRES_PASSWORD (or DATABASE_URL) in Key Vault or environment"
            )

        try:
            if 'sqlite_path' in params:
                # Local prototype runs and tests: SQLite with the same schema
                self._using_sqlite_fallback = True
                self.connection = sqlite3.connect(params['sqlite_path'], check_same_thread=False)
            elif 'conninfo' in params:
                self.connection = psycopg.connect(params['conninfo'])
            else:
                self.connection = psycopg.connect(**params)

            if not self._migrations_run:
                self._run_migrations()
                self._migrations_run = True
        except Exception as e:
            if self.connection is not None:
                try:
                    self.connection.close()
                except Exception:
                    logger.debug("Closing failed connection raised", exc_info=True)
                self.connection = None
            raise ConnectionError(f"Failed to connect to database: {e}") from e
        return self.connection

    @staticmethod
    def _is_closed(connection) -> bool:
        return bool(getattr(connection, 'closed', False))

    def close(self):
        """Close database connection."""
        if self.connection is not None and not self._is_closed(self.connection):
            self.connection.close()
        self.connection = None

    def _discard_connection(self) -> None:
        """Roll back and drop a connection after a failed statement."""
        if self.connection is None:
            return
        try:
            self.connection.rollback()
        except Exception:
            logger.debug("Rollback after failed statement raised", exc_info=True)
        # An in-memory SQLite database lives only as long as its connection
        if not self._using_sqlite_fallback:
            self.connection = None

    def _adapt(self, query: str) -> str:
        if self._using_sqlite_fallback:
            return query.replace('%s', '?')
        return query

    def _run_migrations(self) -> None:
        """Create the dashboard tables when they do not exist yet."""
        conn = self.connection
        cursor = conn.cursor()
        try:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)
            conn.commit()
            logger.info("✓ Database schema verified (users, periode, batch, hasil_clustering)")
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def execute_query(self, query: str, params: tuple = None) -> List[Dict[str, Any]]:
        """Execute a SELECT query and return results."""
        try:
            conn = self.connect()
            cursor = conn.cursor()
            if params:
                cursor.execute(self._adapt(query), params)
            else:
                cursor.execute(self._adapt(query))

            columns = [column[0].lower() for column in cursor.description] if cursor.description else []
            results = [dict(zip(columns, row)) for row in cursor.fetchall()]
            cursor.close()
            return results
        except Exception:
            self._discard_connection()
            raise

    def execute_non_query(self, query: str, params: tuple = None) -> int:
        """Execute INSERT, UPDATE, or DELETE and return affected rows."""
        try:
            conn = self.connect()
            cursor = conn.cursor()
            if params:
                cursor.execute(self._adapt(query), params)
            else:
                cursor.execute(self._adapt(query))
            conn.commit()
            rowcount = cursor.rowcount
            cursor.close()
            return rowcount
        except Exception:
            self._discard_connection()
            raise

    def execute_scalar(self, query: str, params: tuple = None) -> Any:
        """Execute a query and return a single value."""
        rows = self.execute_query(query, params)
        if not rows:
            return None
        return next(iter(rows[0].values()))

    @contextmanager
    def transaction(self):
        """Yield a cursor whose statements commit together or not at all.

        Use ``db.execute_in(cursor, ...)`` inside the block so placeholders
        are adapted for the SQLite fallback.
        """
        conn = self.connect()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except Exception:
            self._discard_connection()
            raise
        finally:
            try:
                cursor.close()
            except Exception:
                logger.debug("Closing transaction cursor raised", exc_info=True)

    def execute_in(self, cursor, query: str, params: tuple = None) -> int:
        if params:
            cursor.execute(self._adapt(query), params)
        else:
            cursor.execute(self._adapt(query))
        return cursor.rowcount

    @staticmethod
    def placeholders(count: int) -> str:
        return ", ".join(["%s"] * count)

    # =====================================================================
    # Profiles (users table)
    # =====================================================================

    def get_profile(self, account_id: str) -> Optional[Profile]:
        rows = self.execute_query("SELECT * FROM users WHERE id = %s", (account_id,))
        return Profile.from_row(rows[0]) if rows else None

    def get_profile_by_id_number(self, id_number: str) -> Optional[Profile]:
        """Look up a profile by student ID number (NIM)."""
        id_number = str(id_number or "").strip()
        if not id_number:
            return None
        rows = self.execute_query("SELECT * FROM users WHERE nim = %s", (id_number,))
        return Profile.from_row(rows[0]) if rows else None

    def get_profiles_by_id_numbers(self, id_numbers: Iterable[str]) -> Dict[str, Profile]:
        """Resolve many ID numbers at once; unknown IDs are absent from the result."""
        wanted = sorted({str(n).strip() for n in id_numbers if n is not None and str(n).strip()})
        profiles: Dict[str, Profile] = {}
        for start in range(0, len(wanted), 500):
            chunk = wanted[start:start + 500]
            rows = self.execute_query(
                f"SELECT * FROM users WHERE nim IN ({self.placeholders(len(chunk))})",
                tuple(chunk)
            )
            for row in rows:
                profile = Profile.from_row(row)
                profiles[profile.id_number] = profile
        return profiles

    def create_profile(self, profile: Profile) -> Profile:
        row = profile.to_row()
        columns = list(row.keys())
        self.execute_non_query(
            f"INSERT INTO users ({', '.join(columns)}) VALUES ({self.placeholders(len(columns))})",
            tuple(row[c] for c in columns)
        )
        logger.info(f"Created profile for {profile.id_number}", extra={'account_id': profile.account_id})
        return profile

    def update_profile(self, account_id: str, fields: Dict[str, Any]) -> Profile:
        """Update whitelisted ``users`` columns and return the fresh profile."""
        updates = {k: v for k, v in fields.items() if k in PROFILE_COLUMNS}
        unknown = set(fields) - PROFILE_COLUMNS
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        if updates:
            assignments = ", ".join(f"{column} = %s" for column in updates)
            affected = self.execute_non_query(
                f"UPDATE users SET {assignments} WHERE id = %s",
                tuple(updates.values()) + (account_id,)
            )
            if affected == 0:
                raise RecordNotFoundError(f"Profile {account_id} not found")
        profile = self.get_profile(account_id)
        if profile is None:
            raise RecordNotFoundError(f"Profile {account_id} not found")
        return profile

    def link_profile_account(self, id_number: str, account_id: str) -> Profile:
        """Attach a placeholder profile to a newly created auth account."""
        placeholder = self.get_profile_by_id_number(id_number)
        if placeholder is None:
            raise RecordNotFoundError(f"No profile for ID number {id_number}")
        with self.transaction() as cursor:
            self.execute_in(
                cursor,
                "UPDATE users SET id = %s, account_linked = %s WHERE nim = %s",
                (account_id, True, placeholder.id_number)
            )
            self.execute_in(
                cursor,
                "UPDATE hasil_clustering SET id_user = %s WHERE id_user = %s",
                (account_id, placeholder.account_id)
            )
        logger.info(f"Linked profile {id_number} to its auth account", extra={'account_id': account_id})
        return self.get_profile(account_id)

    def delete_profile(self, account_id: str) -> int:
        """Delete a profile and its clustering results. Returns deleted result rows."""
        with self.transaction() as cursor:
            removed_results = self.execute_in(
                cursor, "DELETE FROM hasil_clustering WHERE id_user = %s", (account_id,)
            )
            removed = self.execute_in(cursor, "DELETE FROM users WHERE id = %s", (account_id,))
        if removed == 0:
            raise RecordNotFoundError(f"Profile {account_id} not found")
        return removed_results

    def list_students(self) -> List[Profile]:
        rows = self.execute_query(
            "SELECT * FROM users WHERE role = %s ORDER BY nim",
            (Role.STUDENT.value,)
        )
        return [Profile.from_row(row) for row in rows]

    # =====================================================================
    # Periods and batches
    # =====================================================================

    def create_period(self, name: str, academic_year: Optional[str] = None,
                      semester: Optional[str] = None) -> Period:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Nama periode harus diisi", field="nama_periode")
        period = Period(id=new_id(), name=name, academic_year=academic_year or None,
                        semester_label=semester or None)
        self.execute_non_query(
            "INSERT INTO periode (id, nama_periode, tahun_ajaran, semester) VALUES (%s, %s, %s, %s)",
            (period.id, period.name, period.academic_year, period.semester_label)
        )
        return period

    def update_period(self, period_id: str, name: Optional[str] = None,
                      academic_year: Optional[str] = None, semester: Optional[str] = None) -> Period:
        current = self.get_period(period_id)
        if current is None:
            raise RecordNotFoundError(f"Periode {period_id} not found")
        if name is not None and not name.strip():
            raise ValidationError("Nama periode harus diisi", field="nama_periode")
        updated = Period(
            id=current.id,
            name=name.strip() if name is not None else current.name,
            academic_year=academic_year if academic_year is not None else current.academic_year,
            semester_label=semester if semester is not None else current.semester_label,
        )
        self.execute_non_query(
            "UPDATE periode SET nama_periode = %s, tahun_ajaran = %s, semester = %s WHERE id = %s",
            (updated.name, updated.academic_year, updated.semester_label, updated.id)
        )
        return updated

    def get_period(self, period_id: str) -> Optional[Period]:
        rows = self.execute_query("SELECT * FROM periode WHERE id = %s", (period_id,))
        return Period.from_row(rows[0]) if rows else None

    def list_periods(self) -> List[Period]:
        rows = self.execute_query("SELECT * FROM periode ORDER BY created_at DESC, nama_periode")
        return [Period.from_row(row) for row in rows]

    def create_batch(self, name: str, period_id: str, batch_date: Optional[date] = None) -> Batch:
        name = (name or "").strip()
        if not name or not period_id:
            raise ValidationError("Pilih periode dan isi nama batch", field="nama_batch")
        period = self.get_period(period_id)
        if period is None:
            raise RecordNotFoundError(f"Periode {period_id} not found")
        batch = Batch(
            id=new_id(),
            name=name,
            date=(batch_date or date.today()).isoformat(),
            period_id=period_id,
            period=period,
        )
        self.execute_non_query(
            "INSERT INTO batch (id, nama_batch, tgl_batch, id_periode) VALUES (%s, %s, %s, %s)",
            (batch.id, batch.name, batch.date, batch.period_id)
        )
        return batch

    _BATCH_SELECT = """
        SELECT b.id, b.nama_batch, b.tgl_batch, b.id_periode,
               p.nama_periode, p.tahun_ajaran, p.semester
        FROM batch b
        JOIN periode p ON p.id = b.id_periode
    """

    @staticmethod
    def _batch_from_joined(row: Dict[str, Any]) -> Batch:
        period = Period(
            id=row["id_periode"],
            name=row.get("nama_periode") or "",
            academic_year=row.get("tahun_ajaran"),
            semester_label=row.get("semester"),
        )
        return Batch.from_row(row, period=period)

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        rows = self.execute_query(self._BATCH_SELECT + " WHERE b.id = %s", (batch_id,))
        return self._batch_from_joined(rows[0]) if rows else None

    def list_batches(self, period_id: Optional[str] = None) -> List[Batch]:
        if period_id:
            rows = self.execute_query(
                self._BATCH_SELECT + " WHERE b.id_periode = %s ORDER BY b.created_at DESC, b.nama_batch",
                (period_id,)
            )
        else:
            rows = self.execute_query(self._BATCH_SELECT + " ORDER BY b.created_at DESC, b.nama_batch")
        return [self._batch_from_joined(row) for row in rows]


# Create a singleton instance for module-level import
db = Database()
