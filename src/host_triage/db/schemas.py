"""
SQL Schema Definitions for the Artifact Store

Architecture:
    host_triage.db - One append-only table per artifact kind

Design Decisions:
    1. Surrogate keys: every table has id INTEGER PRIMARY KEY AUTOINCREMENT
    2. Capture time: created_at holds the record's capture time
       ("YYYY-MM-DD HH:MM:SS"), not the insert time
    3. Snapshots: system_info and network_info are parents; disk_info and
       network_interface rows reference the parent id generated at insert
    4. Open maps (EVTX system/event/user data) are stored as JSON text
"""

# ============================================================
# host_triage.db - Collected Artifacts
# ============================================================

TRIAGE_SCHEMA = """
-- ═══════════════════════════════════════════════════════════════
-- ACCOUNTS
-- ═══════════════════════════════════════════════════════════════

CREATE TABLE IF NOT EXISTS user_info (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT,
    uid TEXT,                               -- UID on POSIX, SID on Windows
    gid TEXT,
    home_dir TEXT,
    name TEXT,                              -- Full name / GECOS
    created_at TEXT
);

-- ═══════════════════════════════════════════════════════════════
-- SYSTEM SNAPSHOT (parent) AND DISKS (children)
-- ═══════════════════════════════════════════════════════════════

CREATE TABLE IF NOT EXISTS system_info (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hostname TEXT,
    os TEXT,
    arch TEXT,
    cpu_cores INTEGER,
    kernel_version TEXT,
    cpu_usage REAL,
    total_memory INTEGER,
    memory_usage REAL,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS disk_info (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    system_info_id INTEGER NOT NULL,
    mount_point TEXT,
    total_size INTEGER,
    used_size INTEGER,
    free_size INTEGER,
    usage REAL,
    created_at TEXT,
    FOREIGN KEY (system_info_id) REFERENCES system_info(id)
);

CREATE INDEX IF NOT EXISTS idx_disk_system ON disk_info(system_info_id);

-- ═══════════════════════════════════════════════════════════════
-- SCHEDULED TASKS AND STARTUP ITEMS
-- ═══════════════════════════════════════════════════════════════

CREATE TABLE IF NOT EXISTS cron_task (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    line TEXT,
    source TEXT,                            -- "crontab", "/etc/cron.d/x", task folder
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS startup_item (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT,
    path TEXT,
    type TEXT,                              -- "LaunchAgent", "RegistryRun", ...
    enabled BOOLEAN,
    last_mod_time TEXT,
    size INTEGER,
    description TEXT,
    created_at TEXT
);

-- ═══════════════════════════════════════════════════════════════
-- SENSITIVE FILE METADATA
-- ═══════════════════════════════════════════════════════════════

CREATE TABLE IF NOT EXISTS file_monitor (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT,
    file_exists BOOLEAN,
    size INTEGER,
    mode TEXT,
    mod_time TEXT,
    create_time TEXT,
    access_time TEXT,
    change_time TEXT,
    is_dir BOOLEAN,
    is_symlink BOOLEAN,
    owner TEXT,
    group_name TEXT,
    permissions TEXT,
    description TEXT,
    created_at TEXT
);

-- ═══════════════════════════════════════════════════════════════
-- LOGIN EVENTS
-- ═══════════════════════════════════════════════════════════════

CREATE TABLE IF NOT EXISTS login_failed (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    time TEXT,
    event_id TEXT,
    event_type TEXT,
    source TEXT,
    username TEXT,
    ip_address TEXT,
    reason TEXT,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_login_failed_time ON login_failed(time);

CREATE TABLE IF NOT EXISTS login_success (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    time TEXT,
    event_id TEXT,
    event_type TEXT,
    source TEXT,
    username TEXT,
    ip_address TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS rdp_login (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    time TEXT,
    username TEXT,
    ip TEXT,
    status TEXT,
    description TEXT,
    created_at TEXT
);

-- ═══════════════════════════════════════════════════════════════
-- NETWORK SNAPSHOT (parent), INTERFACES (children), CONNECTIONS
-- ═══════════════════════════════════════════════════════════════

CREATE TABLE IF NOT EXISTS network_info (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hostname TEXT,
    gateway TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS network_interface (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    network_info_id INTEGER NOT NULL,
    name TEXT,
    ip TEXT,
    mac TEXT,
    bytes_sent INTEGER,
    bytes_recv INTEGER,
    packets_sent INTEGER,
    packets_recv INTEGER,
    created_at TEXT,
    FOREIGN KEY (network_info_id) REFERENCES network_info(id)
);

CREATE INDEX IF NOT EXISTS idx_interface_network ON network_interface(network_info_id);

CREATE TABLE IF NOT EXISTS network_connection (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    proto TEXT,
    local_addr TEXT,
    remote_addr TEXT,
    status TEXT,
    pid INTEGER,
    created_at TEXT
);

-- ═══════════════════════════════════════════════════════════════
-- PROCESSES AND SHELL HISTORY
-- ═══════════════════════════════════════════════════════════════

CREATE TABLE IF NOT EXISTS process_info (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pid INTEGER,
    name TEXT,
    ppid INTEGER,
    parent_name TEXT,
    create_time REAL,                       -- Epoch seconds
    exe TEXT,
    cmdline TEXT,
    username TEXT,
    file_ctime TEXT,
    file_mtime TEXT,
    md5 TEXT,
    signature TEXT,
    cpu_percent REAL,
    mem_percent REAL,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS shell_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    time TEXT,
    command TEXT,
    user TEXT,
    shell TEXT,
    created_at TEXT
);

-- ═══════════════════════════════════════════════════════════════
-- PATCHES
-- ═══════════════════════════════════════════════════════════════

CREATE TABLE IF NOT EXISTS patch_record (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    time TEXT,
    title TEXT,
    description TEXT,
    status TEXT,
    kb TEXT,                                -- Windows KB number without "KB"
    created_at TEXT
);

-- ═══════════════════════════════════════════════════════════════
-- WINDOWS EVENT LOG RECORDS
-- ═══════════════════════════════════════════════════════════════

CREATE TABLE IF NOT EXISTS evtx_event (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    time TEXT,
    event_id INTEGER,
    provider TEXT,
    level TEXT,
    channel TEXT,
    computer TEXT,
    user_id TEXT,
    description TEXT,
    event_record_id INTEGER,
    version INTEGER,
    qualifiers INTEGER,
    task INTEGER,
    opcode INTEGER,
    keywords TEXT,
    process_id INTEGER,
    thread_id INTEGER,
    message TEXT,
    system_info TEXT,                       -- JSON object
    event_data TEXT,                        -- JSON object
    user_data TEXT,                         -- JSON object
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_evtx_event_id ON evtx_event(event_id);
"""
