#!/usr/bin/env python3
"""
Roster Test Data Generator for the Certificate Batch Service

Generates spreadsheets the service accepts:
- Certificate rosters: name, email (email optional per row)
- Credential rosters: name, email, phone (all required)
- A configurable share of deliberately invalid rows to exercise row validation

Usage:
    python scripts/generate_test_data.py [number_of_entries] [output_filename] [--kind KIND] [--invalid-percent N] [--xlsx]

Examples:
    python scripts/generate_test_data.py 100                                  # 100 certificate rows, CSV
    python scripts/generate_test_data.py 50 --kind credential                 # 50 credential rows
    python scripts/generate_test_data.py 500 roster.xlsx --xlsx               # Excel workbook
    python scripts/generate_test_data.py 200 --invalid-percent 10             # 10% invalid rows

Certificate format:
    name,email

Credential format:
    name,email,phone
"""

import argparse
import csv
import random
import sys
import os
from pathlib import Path

import pandas as pd

# Import generation kinds from the main application
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))
from certbatch.models import GenerationKind

# Lists of fake data for generating realistic entries
FIRST_NAMES = [
    "James", "Mary", "John", "Patricia", "Robert", "Jennifer", "Michael", "Linda",
    "William", "Elizabeth", "David", "Barbara", "Richard", "Susan", "Joseph", "Jessica",
    "Thomas", "Sarah", "Christopher", "Karen", "Charles", "Nancy", "Daniel", "Lisa",
    "Aarav", "Priya", "Rohan", "Ananya", "Vikram", "Sneha", "Arjun", "Kavya",
    "Rahul", "Meera", "Karan", "Divya", "Aditya", "Pooja", "Siddharth", "Nisha"
]

LAST_NAMES = [
    "Smith", "Johnson", "Williams", "Brown", "Jones", "Garcia", "Miller", "Davis",
    "Wilson", "Anderson", "Taylor", "Moore", "Jackson", "Martin", "Lee", "Thompson",
    "Sharma", "Verma", "Patel", "Gupta", "Singh", "Kumar", "Reddy", "Iyer",
    "Nair", "Mehta", "Joshi", "Rao", "Das", "Bose", "Chopra", "Kapoor"
]

EMAIL_DOMAINS = ["example.com", "example.org", "mail.example.net", "students.example.edu"]

INVALID_EMAILS = ["not-an-email", "missing@domain", "spaces in@example.com", "@example.com"]
INVALID_PHONES = ["12345", "98765432101", "98765-4321", "phone"]


def generate_name():
    """Generate a random full name"""
    first = random.choice(FIRST_NAMES)
    last = random.choice(LAST_NAMES)
    return f"{first} {last}"


def generate_email(name):
    """Generate an address derived from the name"""
    local = name.lower().replace(" ", random.choice([".", "_", ""]))
    if random.random() < 0.3:
        local += str(random.randint(1, 99))
    return f"{local}@{random.choice(EMAIL_DOMAINS)}"


def generate_phone():
    """Generate a 10-digit mobile number"""
    return str(random.choice([6, 7, 8, 9])) + "".join(str(random.randint(0, 9)) for _ in range(9))


def generate_row(kind, invalid_percentage=0):
    """Generate one roster row, occasionally broken on purpose

    Args:
        kind: Certificate or credential roster
        invalid_percentage: Chance (0-100) that the row fails validation

    Returns a dict keyed by column name
    """
    name = generate_name()
    row = {'name': name, 'email': generate_email(name)}

    if kind is GenerationKind.CREDENTIAL:
        row['phone'] = generate_phone()
    elif random.random() < 0.1:
        # Certificate rows may omit the email
        row['email'] = ""

    if random.random() < invalid_percentage / 100.0:
        broken_field = random.choice(list(row))
        if broken_field == 'name':
            row['name'] = ""
        elif broken_field == 'email':
            row['email'] = random.choice(INVALID_EMAILS)
        else:
            row['phone'] = random.choice(INVALID_PHONES)

    return row


def generate_roster(filename, num_entries=100, kind=GenerationKind.CERTIFICATE, invalid_percentage=0, as_xlsx=False):
    """Write a roster to uploads/<filename> and return its path"""
    print(f"Generating {num_entries:,} {kind.value} rows...")
    print(f"Invalid row percentage: {invalid_percentage}%")

    # Ensure uploads directory exists
    uploads_dir = Path("uploads")
    uploads_dir.mkdir(exist_ok=True)

    filepath = uploads_dir / filename
    fieldnames = ['name', 'email', 'phone'] if kind is GenerationKind.CREDENTIAL else ['name', 'email']
    rows = [generate_row(kind, invalid_percentage) for _ in range(num_entries)]

    if as_xlsx:
        pd.DataFrame(rows, columns=fieldnames).to_excel(filepath, index=False, engine="openpyxl")
    else:
        with open(filepath, 'w', newline='', encoding='utf-8') as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=fieldnames)
            writer.writeheader()
            writer.writerows(rows)

    file_size = filepath.stat().st_size
    file_size_mb = file_size / (1024 * 1024)

    print(f"Successfully generated {filepath}")
    print(f"File size: {file_size_mb:.2f} MB ({file_size:,} bytes)")

    with_email = sum(1 for row in rows if row['email'])
    print("\nData Distribution:")
    print(f"  Rows with an email: {with_email:,}")
    print(f"  Deliberately invalid (approx): ~{round(num_entries * invalid_percentage / 100):,}")

    return str(filepath)


def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(
        description="Generate roster spreadsheets for the Certificate Batch Service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:")[1] if "Examples:" in __doc__ else None
    )
    parser.add_argument("num_entries", nargs="?", type=int, default=100, help="Number of rows (default: 100)")
    parser.add_argument("filename", nargs="?", help="Output filename (default: roster_<kind>_<n>.csv)")
    parser.add_argument(
        "--kind",
        choices=[kind.value for kind in GenerationKind],
        default=GenerationKind.CERTIFICATE.value,
        help="Roster kind (default: certificate)"
    )
    parser.add_argument("--invalid-percent", type=int, default=0, help="Percentage of invalid rows (0-100)")
    parser.add_argument("--xlsx", action="store_true", help="Write an Excel workbook instead of CSV")

    args = parser.parse_args()

    if args.num_entries <= 0:
        print("Error: Number of entries must be positive")
        sys.exit(1)
    if not 0 <= args.invalid_percent <= 100:
        print("Error: Invalid percentage must be between 0 and 100")
        sys.exit(1)

    kind = GenerationKind(args.kind)
    extension = ".xlsx" if args.xlsx else ".csv"
    filename = args.filename or f"roster_{kind.value}_{args.num_entries}{extension}"
    if not filename.endswith(extension):
        filename += extension

    print(f"Target: {args.num_entries:,} rows -> uploads/{filename}")
    generate_roster(filename, args.num_entries, kind, args.invalid_percent, args.xlsx)


if __name__ == "__main__":
    main()
