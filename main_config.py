import os
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DB_DIR = os.path.join(BASE_DIR, "db")
PROFILE_DIR = os.path.join(DB_DIR, "profiles")
PROFILE_DB_PATH = os.path.join(PROFILE_DIR, "profiles.db")

PROMPTS_DIR = os.path.join(BASE_DIR, "prompts")
TRAITS_DIR = os.path.join(BASE_DIR, "traits")
