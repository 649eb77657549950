from datetime import datetime, timedelta
import random
from app import app, db
from models import User, AdminUser, AdminRole, EwasteItem, CollectionRequest, MarketplaceListing, WalletBalance

# Registration categories and sample names for random selection
item_names = {
    'Mobile': ['Samsung Galaxy S9', 'iPhone 7', 'Nokia 3310'],
    'Computer': ['Dell OptiPlex 7010', 'HP ProDesk 400'],
    'Laptop': ['Lenovo ThinkPad T440', 'MacBook Air 2015'],
    'Printer': ['HP LaserJet P1102', 'Canon PIXMA MG2540'],
    'Accessories': ['USB keyboard', 'Wireless mouse', 'Phone charger'],
    'Other': ['Old router', 'DVD player']
}

conditions = ['Working', 'Damaged', 'Not Working']

# Sample addresses (address, city, postal code)
addresses = [
    ("12 Long Street", "Cape Town", "8001"),
    ("45 Jan Smuts Avenue", "Johannesburg", "2196"),
    ("7 Florida Road", "Durban", "4001"),
    ("101 Church Street", "Pretoria", "0002"),
    ("22 Main Road", "Gqeberha", "6001")
]

time_slots = [9, 11, 14, 16]

# Sample requests move through the full collection path
request_statuses = ['pending', 'confirmed', 'in_progress', 'completed', 'cancelled']


def create_sample_user(email, full_name, password, num_items, admin_role=None):
    # Create user
    user = User(email=email, full_name=full_name, eco_points=random.randint(0, 500))
    user.set_password(password)
    db.session.add(user)
    db.session.flush()  # Get user ID without committing

    if admin_role is not None:
        db.session.add(AdminUser(user_id=user.id, admin_role=admin_role, is_active=True, created_by=user.id))

    db.session.add(WalletBalance(user_id=user.id, balance=round(random.uniform(0, 800), 2), currency='ZAR'))

    items = []
    for i in range(num_items):
        category = random.choice(list(item_names))
        condition = random.choice(conditions)
        item = EwasteItem(
            user_id=user.id,
            name=random.choice(item_names[category]),
            category=category,
            condition=condition,
            description=f"{condition} {category.lower()} from home clear-out",
            weight=round(random.uniform(0.1, 12.0), 1),
            created_at=datetime.utcnow() - timedelta(days=random.randint(1, 30))
        )
        db.session.add(item)
        items.append(item)

        # Working and damaged items are given away on the marketplace
        if condition != 'Not Working':
            db.session.add(MarketplaceListing(
                user_id=user.id,
                title=item.name,
                description=item.description,
                price=0.0,
                is_free=True,
                type=category,
                condition=condition,
                location=random.choice(addresses)[1],
                status=random.choice(['available', 'available', 'unavailable'])
            ))

    # Create collection requests (some completed, some pending)
    for status in random.sample(request_statuses, k=min(3, len(request_statuses))):
        address, city, postal_code = random.choice(addresses)
        day = datetime.utcnow().replace(hour=random.choice(time_slots), minute=0, second=0, microsecond=0)
        scheduled_date = day - timedelta(days=random.randint(1, 15)) if status == 'completed' else day + timedelta(days=random.randint(1, 15))
        db.session.add(CollectionRequest(
            user_id=user.id,
            address=address,
            city=city,
            postal_code=postal_code,
            scheduled_date=scheduled_date,
            status=status,
            items=random.sample(items, k=min(2, len(items)))
        ))

    return user


def main():
    with app.app_context():
        print("Creating sample users...")

        sample_users = [
            {'email': 'thandi@example.com', 'full_name': 'Thandi Mokoena', 'password': 'password123',
             'num_items': random.randint(5, 9), 'admin_role': AdminRole.SUPER_ADMIN.value},
            {'email': 'pieter@example.com', 'full_name': 'Pieter van Wyk', 'password': 'password123',
             'num_items': random.randint(3, 7), 'admin_role': AdminRole.MODERATOR.value},
            {'email': 'aisha@example.com', 'full_name': 'Aisha Patel', 'password': 'password123',
             'num_items': random.randint(4, 8)},
        ]

        # Check if users already exist
        existing_emails = {user.email for user in User.query.filter(User.email.in_([u['email'] for u in sample_users])).all()}

        for user_data in sample_users:
            if user_data['email'] in existing_emails:
                continue
            user = create_sample_user(**user_data)
            print(f"Created user: {user.email} with {user.eco_points} eco points and {user_data['num_items']} e-waste items")

        db.session.commit()
        print("Sample users created successfully!")


if __name__ == "__main__":
    main()
