import os

# webapp builds its engine at import time
os.environ.setdefault("SCRIM_DATABASE_URL", "sqlite://")
