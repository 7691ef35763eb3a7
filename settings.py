# settings.py

# Engine
ENGINE_NAME = "Faction Territory Engine"
LOGGER_NAME = "factions"
CHUNK_SHIFT = 4  # 16 blocks per chunk

# Factions
MAX_MEMBERS = 50
MIN_NAME_LENGTH = 3
MAX_NAME_LENGTH = 24
MAX_TAG_LENGTH = 5
MAX_LOGS = 100

# Power
MAX_PLAYER_POWER = 20.0
STARTING_POWER = 10.0
POWER_PER_CLAIM = 2.0
DEATH_PENALTY = 1.0
KILL_REWARD = 0.0
REGEN_PER_TICK = 0.1
REGEN_WHEN_OFFLINE = False

# Claims
MAX_CLAIMS = 100
ONLY_ADJACENT = True
DECAY_ENABLED = True
DECAY_DAYS_INACTIVE = 30

# Relations (-1 = unlimited)
MAX_ALLIES = 10
MAX_ENEMIES = -1

# Invites / join requests
INVITE_EXPIRATION_MINUTES = 5
JOIN_REQUEST_EXPIRATION_HOURS = 24

# Scheduler
REGEN_INTERVAL_SECONDS = 60
DECAY_INTERVAL_MINUTES = 60
SWEEP_INTERVAL_MINUTES = 5
AUTOSAVE_INTERVAL_MINUTES = 5
