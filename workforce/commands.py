"""Maintenance commands, run as ``flask --app workforce <command>``."""

from datetime import date

import click
from flask import current_app

from . import db, lifecycle, occupancy, store
from .models import ADMIN, MEN_ROOM, SUPERADMIN, WOMEN_ROOM, AppUser, Farm, Room, StockItem


def seed_demo():
    """Two farms with rooms, admins and stock, enough to click around."""

    central = AppUser(name="Central admin", email="central@example.com", role=SUPERADMIN)
    db.session.add(central)
    for index, name in enumerate(["Ferme Atlas", "Ferme Souss"], start=1):
        farm = Farm(name=name)
        db.session.add(farm)
        db.session.flush()
        db.session.add(AppUser(name=f"{name} admin", email=f"admin{index}@example.com", role=ADMIN, farm_id=farm.id))
        for number in range(1, 5):
            category = MEN_ROOM if number % 2 else WOMEN_ROOM
            db.session.add(Room(farm_id=farm.id, number=str(100 * index + number), gender_category=category,
                                sector=f"Secteur {number}", total_capacity=4, occupant_ids=[]))
        for item, quantity in (("Matelas", 20), ("Armoire", 10), ("Couverture", 30)):
            db.session.add(StockItem(farm_id=farm.id, item_name=item, quantity=quantity))
    db.session.commit()


def register_commands(app):
    @app.cli.command("init-db")
    @click.option("--drop", is_flag=True, help="Drop existing tables first.")
    @click.option("--seed", is_flag=True, help="Add demo farms, rooms, users and stock.")
    def init_db(drop, seed):
        """Create the database tables."""
        if drop:
            db.drop_all()
        db.create_all()
        if seed:
            seed_demo()
        click.echo("Database initialized.")

    @app.cli.command("sweep-rooms")
    @click.option("--farm-id", type=int, default=None)
    def sweep_rooms(farm_id):
        """Drop room occupants that are no longer active, same-farm, same-gender workers."""
        with store.atomic():
            report = occupancy.sweep_inactive_occupants(farm_id)
        current_app.logger.info("Room sweep fixed %d of %d room(s)", report.rooms_fixed, report.rooms_checked)
        click.echo(f"Checked {report.rooms_checked} room(s), fixed {report.rooms_fixed}.")
        for room_id, ids in sorted(report.removed.items()):
            click.echo(f"  room {room_id}: removed {', '.join(map(str, ids))}")

    @app.cli.command("sync-rooms")
    @click.option("--farm-id", type=int, default=None)
    def sync_rooms(farm_id):
        """Rebuild room occupants from the rooms workers claim."""
        with store.atomic():
            report = occupancy.rebuild_room_occupancy(farm_id)
        current_app.logger.info("Room sync rebuilt %d of %d room(s)", report.rooms_fixed, report.rooms_checked)
        click.echo(f"Checked {report.rooms_checked} room(s), rebuilt {report.rooms_fixed}.")

    @app.cli.command("heal-statuses")
    @click.option("--today", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
    def heal_statuses(today):
        """Mark workers whose exit date has passed as inactive."""
        report = lifecycle.heal_inconsistent_statuses(today.date() if today else date.today())
        current_app.logger.info("Status heal: %d healed, %d unresolved", len(report.healed), len(report.unresolved))
        click.echo(f"Healed {len(report.healed)} worker(s).")
        if report.unresolved:
            click.echo(f"Inactive without exit date: {', '.join(map(str, report.unresolved))}")
