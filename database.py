import sqlite3

from config import settings

DB_NAME = settings.db_path

def init_database():
    """Initialize the SQLite database with the required schema."""
    conn = sqlite3.connect(DB_NAME)
    # Ensure foreign key constraints are enforced (SQLite requires this per-connection)
    conn.execute('PRAGMA foreign_keys = ON;')
    cursor = conn.cursor()

    # Historical candles, one row per (asset, timeframe, timestamp)
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS market_data (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            asset TEXT NOT NULL,
            timeframe TEXT NOT NULL,
            timestamp TEXT NOT NULL,             -- ISO-8601 UTC start of candle
            open REAL NOT NULL,
            high REAL NOT NULL,
            low REAL NOT NULL,
            close REAL NOT NULL,
            volume REAL,
            UNIQUE(asset, timeframe, timestamp)
        )
    ''')
    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_market_data_lookup
        ON market_data(asset, timeframe, timestamp)
    ''')

    # Interpolated sub-candle ticks (progressive candle formation)
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS candle_ticks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            asset TEXT NOT NULL,
            timeframe TEXT NOT NULL,
            candle_timestamp TEXT NOT NULL,
            tick_index INTEGER NOT NULL,
            timestamp TEXT NOT NULL,
            price REAL NOT NULL,
            running_open REAL NOT NULL,
            running_high REAL NOT NULL,
            running_low REAL NOT NULL,
            running_close REAL NOT NULL,
            is_final_tick INTEGER NOT NULL DEFAULT 0,
            UNIQUE(asset, timeframe, candle_timestamp, tick_index)
        )
    ''')
    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_candle_ticks_lookup
        ON candle_ticks(asset, timeframe, candle_timestamp, tick_index)
    ''')

    # Replay sessions (one per user start; superseded, never deleted)
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS replay_sessions (
            session_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            asset TEXT NOT NULL,
            timeframe TEXT NOT NULL,
            start_date TEXT NOT NULL,
            initial_balance REAL NOT NULL,
            mode TEXT NOT NULL DEFAULT 'progressive',
            seed INTEGER,
            candle_index INTEGER NOT NULL DEFAULT 0,
            tick_index INTEGER NOT NULL DEFAULT 0,
            ticks_per_candle INTEGER,
            synthesize_ticks INTEGER NOT NULL DEFAULT 0,
            persist_every INTEGER,
            candle_limit INTEGER,
            status TEXT NOT NULL DEFAULT 'active',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            summary_json TEXT
        )
    ''')
    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_replay_sessions_user ON replay_sessions(user_id)
    ''')

    # Simulated positions; open rows are updated in place when closed
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS trades (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            seq INTEGER NOT NULL,
            side TEXT NOT NULL,                  -- BUY | SELL
            entry_price REAL NOT NULL,
            size REAL NOT NULL,
            stop_loss REAL,
            take_profit REAL,
            entry_time TEXT,
            exit_price REAL,
            exit_time TEXT,
            exit_reason TEXT,                    -- manual | stop_loss | take_profit
            pnl REAL,
            close_seq INTEGER,
            entry_candle_index INTEGER,          -- cursor position at entry
            entry_tick_index INTEGER,
            entry_at_close INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'open', -- open | closed
            FOREIGN KEY(session_id) REFERENCES replay_sessions(session_id) ON DELETE CASCADE
        )
    ''')
    # Add new columns if they don't exist (for migration)
    columns_to_add = [
        ('replay_sessions', 'ticks_per_candle', 'INTEGER'),
        ('replay_sessions', 'synthesize_ticks', 'INTEGER NOT NULL DEFAULT 0'),
        ('replay_sessions', 'persist_every', 'INTEGER'),
        ('replay_sessions', 'candle_limit', 'INTEGER'),
        ('trades', 'entry_candle_index', 'INTEGER'),
        ('trades', 'entry_tick_index', 'INTEGER'),
        ('trades', 'entry_at_close', 'INTEGER NOT NULL DEFAULT 0'),
    ]
    for table, column_name, column_type in columns_to_add:
        try:
            cursor.execute(f'ALTER TABLE {table} ADD COLUMN {column_name} {column_type}')
        except sqlite3.OperationalError:
            pass  # Column already exists

    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_trades_session ON trades(session_id, status)
    ''')

    # Append-only replay event log
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS replay_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            ts_exec TEXT NOT NULL,
            ts_market TEXT,
            event_type TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(session_id) REFERENCES replay_sessions(session_id) ON DELETE CASCADE
        )
    ''')
    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_replay_events_session ON replay_events(session_id, id)
    ''')

    conn.commit()
    conn.close()

def get_db_connection():
    """Get a database connection."""
    conn = sqlite3.connect(DB_NAME)
    conn.execute('PRAGMA foreign_keys = ON;')
    return conn

if __name__ == '__main__':
    init_database()
    print(f"Database {DB_NAME} initialized successfully.")
