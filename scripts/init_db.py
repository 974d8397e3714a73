from workforce import create_app, db
from workforce.commands import seed_demo
app = create_app()

with app.app_context():
    db.drop_all()
    db.create_all()
    # Demo farms, rooms, admins and stock
    seed_demo()
    print("Database initialized.")
