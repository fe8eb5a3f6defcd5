"""Shared test configuration."""
import sys
import os

# Add backend directory to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

os.environ["DATABASE_URL"] = "sqlite:///test.db"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["AUTO_START"] = "false"
