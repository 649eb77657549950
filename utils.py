import math
import os
import uuid
import feedparser
from datetime import datetime, time
from flask import current_app
from PIL import Image, UnidentifiedImageError


def get_ewaste_news(limit=5):
    """
    Fetch the latest e-waste news from Google News RSS feed

    Args:
        limit (int): Maximum number of news items to return

    Returns:
        list: List of news items with titles and links
    """
    try:
        url = "https://news.google.com/rss/search?q=e+waste+latest+news"
        feed = feedparser.parse(url)

        news_list = []
        for entry in feed.entries[:limit]:
            news_list.append({
                "title": entry.title,
                "link": entry.link,
                "published": entry.published if hasattr(entry, 'published') else None,
                "summary": entry.summary if hasattr(entry, 'summary') else None
            })

        return news_list
    except Exception as e:
        current_app.logger.error(f"Error fetching e-waste news: {str(e)}")
        return []


# Carbon savings estimates in kg CO2 equivalent per device
CARBON_SAVINGS = {
    # Registration categories
    'Mobile': 60.0,
    'Computer': 200.0,
    'Laptop': 140.0,
    'Printer': 60.0,
    'Accessories': 8.0,

    # Common devices
    'Smartphone': 60.0,
    'Tablet': 80.0,
    'Desktop-PC': 200.0,
    'Server': 250.0,
    'Flat-Panel-Monitor': 90.0,
    'CRT-Monitor': 150.0,
    'Flat-Panel-TV': 120.0,
    'CRT-TV': 180.0,
    'Router': 30.0,
    'Battery': 10.0,
    'Refrigerator': 350.0,
    'Washing-Machine': 240.0,
    'Microwave': 100.0,
    'Air-Conditioner': 300.0,

    'Other': 40.0
}


def calculate_carbon_footprint(ewaste_type, quantity=1):
    """
    Calculate the carbon footprint saved by recycling e-waste

    Args:
        ewaste_type (str): Type of e-waste
        quantity (int): Number of devices

    Returns:
        float: Estimated carbon footprint in kg CO2
    """
    if ewaste_type in CARBON_SAVINGS:
        return CARBON_SAVINGS[ewaste_type] * quantity
    lookup = {key.lower(): value for key, value in CARBON_SAVINGS.items()}
    return lookup.get((ewaste_type or '').strip().lower(), CARBON_SAVINGS['Other']) * quantity


# Drop-off points shown by the recycle locator
RECYCLING_FACILITIES = [
    {
        'id': 1,
        'name': 'Green E-Cycle Center',
        'address': '123 Recycling Way, Cape Town',
        'latitude': -33.9249,
        'longitude': 18.4241,
        'phone_number': '021-555-0123',
        'operating_hours': 'Mon-Fri: 8am-5pm, Sat: 9am-2pm',
        'accepted_items': ['Computers', 'Phones', 'Batteries', 'Appliances'],
        'website': 'https://example.com/green-ecycle'
    },
    {
        'id': 2,
        'name': 'Tech Reclaim Depot',
        'address': '456 Electronics Ave, Johannesburg',
        'latitude': -26.2041,
        'longitude': 28.0473,
        'phone_number': '011-555-0456',
        'operating_hours': 'Mon-Sat: 9am-6pm',
        'accepted_items': ['Computers', 'TVs', 'Printers', 'Cables'],
        'website': 'https://example.com/tech-reclaim'
    },
    {
        'id': 3,
        'name': 'Electro Waste Solutions',
        'address': '789 Circuit Blvd, Durban',
        'latitude': -29.8587,
        'longitude': 31.0218,
        'phone_number': '031-555-0789',
        'operating_hours': 'Mon-Fri: 8:30am-4:30pm',
        'accepted_items': ['Batteries', 'Phones', 'Appliances', 'Cables'],
        'website': None
    },
    {
        'id': 4,
        'name': 'E-Waste Recovery Center',
        'address': '321 Component Street, Pretoria',
        'latitude': -25.7479,
        'longitude': 28.2293,
        'phone_number': '012-555-0321',
        'operating_hours': 'Tue-Sat: 10am-5pm',
        'accepted_items': ['Computers', 'TVs', 'Phones', 'Appliances', 'Batteries'],
        'website': 'https://example.com/ewaste-recovery'
    },
    {
        'id': 5,
        'name': 'CircuitBoard Recyclers',
        'address': '654 Digital Road, Port Elizabeth',
        'latitude': -33.9608,
        'longitude': 25.6022,
        'phone_number': '041-555-0654',
        'operating_hours': 'Mon-Fri: 9am-5pm',
        'accepted_items': ['Computers', 'Circuit Boards', 'Phones'],
        'website': 'https://example.com/circuitboard'
    },
]

# Cape Town city centre, used when the client does not send its location
DEFAULT_LOCATION = (-33.918861, 18.4233)


def distance_km(lat1, lon1, lat2, lon2):
    """Great-circle distance between two coordinates in kilometres (Haversine formula)"""
    lat1_rad, lon1_rad, lat2_rad, lon2_rad = (math.radians(v) for v in (lat1, lon1, lat2, lon2))
    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    return 6371.0 * 2 * math.asin(math.sqrt(a))


def find_recycling_facilities(search='', item=None, sort='asc', location=None):
    """
    Search the recycling facility directory

    Args:
        search (str): Matched case-insensitively against name and address
        item (str): Only facilities accepting this item type; None or "All" keeps every facility
        sort (str): "asc" for nearest first, "desc" for furthest first
        location (tuple): (latitude, longitude) of the user, defaults to DEFAULT_LOCATION

    Returns:
        list: Facility dicts with a ``distance`` in km rounded to one decimal
    """
    latitude, longitude = location or DEFAULT_LOCATION
    search = (search or '').strip().lower()
    wanted = (item or '').strip().lower()

    results = []
    for facility in RECYCLING_FACILITIES:
        if search and search not in facility['name'].lower() and search not in facility['address'].lower():
            continue
        if wanted and wanted != 'all' and wanted not in (a.lower() for a in facility['accepted_items']):
            continue
        distance = distance_km(latitude, longitude, facility['latitude'], facility['longitude'])
        results.append({**facility, 'distance': round(distance, 1)})

    results.sort(key=lambda f: f['distance'], reverse=(sort == 'desc'))
    return results


def accepted_item_types():
    return sorted({item for facility in RECYCLING_FACILITIES for item in facility['accepted_items']})


def eco_points_for_payment(amount_cents):
    # 1 eco point per 10 cents paid
    return int(amount_cents) // 10


def format_countdown(seconds):
    """Render a remaining number of seconds as m:ss"""
    seconds = max(0, int(seconds))
    minutes, remaining_seconds = divmod(seconds, 60)
    return f"{minutes}:{remaining_seconds:02d}"


def parse_time_slot(day, time_slot):
    """
    Combine a pickup date with the start of a time slot such as "09:00 - 11:00"

    Args:
        day (date): The collection date
        time_slot (str): Slot label, start and end separated by " - "

    Returns:
        datetime: The scheduled start of the collection
    """
    start = time_slot.split(' - ')[0].strip()
    hours, minutes = (int(part) for part in start.split(':'))
    return datetime.combine(day, time(hours, minutes))


def save_image_upload(file, subfolder, max_size=(1024, 1024)):
    """
    Store an uploaded photo as a resized JPEG under the upload folder

    Args:
        file (FileStorage): The uploaded file
        subfolder (str): avatars, listings or reports
        max_size (tuple): Bounding box for the stored image

    Returns:
        str: Path of the stored image relative to the upload folder, or None if the file is not an image
    """
    try:
        img = Image.open(file.stream)
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        current_app.logger.warning(f"Rejected upload {file.filename}: {str(e)}")
        return None

    # Convert to RGB if the image has an alpha channel or a palette
    if img.mode not in ('RGB', 'L'):
        img = img.convert('RGB')
    img.thumbnail(max_size)

    folder = os.path.join(current_app.config['UPLOAD_FOLDER'], subfolder)
    os.makedirs(folder, exist_ok=True)
    filename = f"{uuid.uuid4().hex}.jpg"
    img.save(os.path.join(folder, filename), format='JPEG', quality=85)
    return f"{subfolder}/{filename}"
