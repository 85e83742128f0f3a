import json
from pathlib import Path
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from production.models import (
    ProductionUser, QualityInspector, ProductionHeader, HourlyProduction, HourlyInspection
)
from production.services import HourlyProductionService


class Command(BaseCommand):
    help = "Load demo seed data from JSON files in seed_data/."

    def add_arguments(self, parser):
        parser.add_argument(
            "--truncate",
            action="store_true",
            help="Delete existing data before loading.",
        )
        parser.add_argument(
            "--dir",
            default="seed_data",
            help="Directory containing JSON files (default: seed_data).",
        )

    @transaction.atomic
    def handle(self, *args, **options):
        base_dir = Path(options["dir"]).resolve()

        # 1. optional clean
        if options["truncate"]:
            self.stdout.write("Deleting existing records…")
            HourlyInspection.objects.all().delete()
            HourlyProduction.objects.all().delete()
            ProductionHeader.objects.all().delete()
            QualityInspector.objects.all().delete()
            ProductionUser.objects.all().delete()

        # 2. load json helpers
        def load_json(name):
            path = base_dir / f"{name}.json"
            if not path.exists():
                raise CommandError(f"{path} not found")
            with open(path) as f:
                return json.load(f)

        users      = load_json("production_users")
        inspectors = load_json("quality_inspectors")
        headers    = load_json("headers")
        hours      = load_json("hourly_productions")

        # 3. create records (bulk for speed)
        ProductionUser.objects.bulk_create(
            [
                ProductionUser(id=u["id"], name=u["name"], phone=u.get("phone", ""), bio=u.get("bio", ""))
                for u in users
            ],
            ignore_conflicts=True,
        )
        QualityInspector.objects.bulk_create(
            [
                QualityInspector(id=q["id"], name=q["name"], phone=q.get("phone", ""), bio=q.get("bio", ""))
                for q in inspectors
            ],
            ignore_conflicts=True,
        )
        ProductionHeader.objects.bulk_create(
            [
                ProductionHeader(
                    id=h["id"],
                    production_user_id=h["production_user_id"],
                    production_date=h["production_date"],
                    quality_inspector_id=h.get("quality_inspector_id"),
                    manpower_present=h.get("manpower_present"),
                    manpower_absent=h.get("manpower_absent"),
                    working_hour=h.get("working_hour"),
                    plan_efficiency=h.get("plan_efficiency"),
                    smv=h.get("smv"),
                    today_target=h.get("today_target"),
                )
                for h in headers
            ],
            ignore_conflicts=True,
        )

        # 4. hours go through the service so derived fields are filled in
        owners = {h["id"]: h["production_user_id"] for h in headers}
        for entry in sorted(hours, key=lambda e: (e["header_id"], e["hour"])):
            HourlyProductionService.submit_hour(
                entry["header_id"], owners[entry["header_id"]], entry["hour"], entry["achieved_qty"]
            )

        self.stdout.write(self.style.SUCCESS("✅  Seed data loaded successfully"))
