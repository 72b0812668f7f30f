import sqlite3
import json
import logging
import threading

logger = logging.getLogger("KeeperDB")

# Set by init_db(); None means the journal is disabled.
DB_FILE = None

# Thread-safe lock for database access
db_lock = threading.Lock()


def get_connection():
    """Returns a connection to the SQLite journal with WAL mode for frequent small writes."""
    conn = sqlite3.connect(DB_FILE, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def is_enabled():
    return DB_FILE is not None


def init_db(path):
    """Points the journal at `path` and creates the tables. Safe to call repeatedly."""
    global DB_FILE
    DB_FILE = path
    with db_lock:
        conn = get_connection()
        cursor = conn.cursor()

        # One row per job that reached SUBMITTING, plus skips and failures for audit.
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT,
                agent TEXT,
                state TEXT,
                skip_reason TEXT,
                error_type TEXT,
                tx_hash TEXT,
                processed_count INTEGER,
                leftover_count INTEGER,
                gas_used TEXT,
                actual_cost_wei TEXT,
                detail TEXT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                level TEXT,
                message TEXT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        conn.commit()
        conn.close()


def log_event(level, message):
    """Logs a system event to the journal."""
    if not is_enabled():
        return
    try:
        with db_lock:
            conn = get_connection()
            conn.execute("INSERT INTO logs (level, message) VALUES (?, ?)", (level, message))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.error(f"❌ DB Log Error: {e}")


def record_job_result(run_id, agent, result):
    """Records one executor JobResult."""
    if not is_enabled():
        return
    record = result.as_record()
    try:
        with db_lock:
            conn = get_connection()
            conn.execute('''
                INSERT INTO executions (run_id, agent, state, skip_reason, error_type, tx_hash,
                                        processed_count, leftover_count, gas_used, actual_cost_wei, detail)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                run_id,
                agent,
                record["state"],
                record["skipReason"],
                record["errorType"],
                record["txHash"],
                len(record["processed"]),
                len(record["leftover"]),
                record["gasUsed"],
                record["actualCost"],
                json.dumps(record),
            ))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        log_event("ERROR", f"Failed to record execution: {e}")

