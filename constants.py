#parameters
MIB = 1024 ** 2

# iphymv hands every transfer thread roughly this many bytes, so a file of
# n * THREAD_CHUNK_BYTES is moved with about n threads.
THREAD_CHUNK_BYTES = 32 * MIB

#ICAT database (read-only account)
DB_HOST = 'irods-db3'
DB_PORT = 5432
DB_NAME = 'ICAT'
DB_USER = 'icat_reader'

#external tools
PSQL = 'psql'
IPHYMV = 'iphymv'
# -M: admin mode, -v: one line per moved data object
IPHYMV_FLAGS = ['-M', '-v']

DEFAULT_MULTIPLIER = 1

# Cohort tiers: (max processes, min threads, max threads).
# Larger files get more threads per transfer from iphymv, so the number of
# concurrent transfers drops as the size grows to keep the network and the
# storage servers from being oversubscribed.
# None as max threads means the tier is unbounded.
COHORT_TIERS = [
    (16, 0, 0),      # 0 byte transfers
    (16, 0, 1),      # 1-threaded
    (8, 1, 2),       # 2-threaded
    (6, 2, 3),       # 3-threaded
    (4, 3, 5),       # 4--5-threaded
    (3, 5, 7),       # 6--7-threaded
    (2, 7, 15),      # 8--15-threaded
    (1, 15, None),   # 16-threaded
]

#settings that may be overridden from a yaml config file
CONFIG_KEYS = ('db_host', 'db_port', 'db_name', 'db_user', 'psql', 'iphymv', 'thread_hint')
