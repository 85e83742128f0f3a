from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from production.models import ProductionHeader
from production.services import HourlyProductionService


class Command(BaseCommand):
    help = "Rebuild cached target/variance/efficiency fields of stored hourly records."

    def add_arguments(self, parser):
        parser.add_argument(
            "--header",
            type=int,
            help="Only recompute this production header id.",
        )

    def handle(self, *args, **options):
        headers = ProductionHeader.objects.order_by("id")
        if options["header"] is not None:
            headers = headers.filter(pk=options["header"])
            if not headers.exists():
                raise CommandError(f"Production header {options['header']} not found")

        total = 0
        for header in headers:
            with transaction.atomic():
                locked = ProductionHeader.objects.select_for_update().get(pk=header.pk)
                total += HourlyProductionService.recompute_header(locked)

        self.stdout.write(self.style.SUCCESS(f"Recomputed {total} hourly records"))
