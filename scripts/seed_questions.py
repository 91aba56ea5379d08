"""
Seed the Well-Architected question catalog — 6 pillars + 30 questions.

Usage:
    python scripts/seed_questions.py                     # Uses development DB
    python scripts/seed_questions.py --env production    # Uses production DB

This script is idempotent — safe to run multiple times.
Same as ``flask seed-questions``.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app
from app.models import db
from app.services.question_catalog import list_pillars, seed_default_questions


def main():
    parser = argparse.ArgumentParser(description="Seed Well-Architected pillars and questions")
    parser.add_argument("--env", default="development", help="App environment")
    args = parser.parse_args()

    os.environ.setdefault("APP_ENV", args.env)
    app = create_app(args.env)

    with app.app_context():
        db.create_all()

        print("=" * 60)
        print("  SEED: Well-Architected Pillars & Questions")
        print("=" * 60)

        result = seed_default_questions()
        print(f"  Pillars:   {result['pillars_created']} created")
        print(f"  Questions: {result['questions_created']} created")

        print("\n" + "=" * 60)
        print("  SUMMARY")
        print("=" * 60)
        for pillar in list_pillars():
            print(f"  {pillar['name']:26s}: {pillar['question_count']:3d} questions")

        print("\nSeed complete!")


if __name__ == "__main__":
    main()
