from flask_wtf import FlaskForm
from flask_wtf.file import FileField, FileAllowed, FileRequired
from wtforms import (StringField, PasswordField, SelectField, SelectMultipleField, TextAreaField, DateField, FloatField,
                     IntegerField)
from wtforms.validators import DataRequired, Email, EqualTo, Length, ValidationError, Optional, NumberRange
from models import User, AdminRole, ItemCondition

IMAGE_TYPES = ['jpg', 'jpeg', 'png', 'webp']

CATEGORY_CHOICES = [
    ('Mobile', 'Mobile Phone'),
    ('Computer', 'Computer'),
    ('Laptop', 'Laptop'),
    ('Printer', 'Printer'),
    ('Accessories', 'Accessories'),
    ('Other', 'Other E-waste')
]

CONDITION_CHOICES = [(c.value, c.value) for c in ItemCondition]

TIME_SLOTS = ['09:00 - 11:00', '11:00 - 13:00', '14:00 - 16:00', '16:00 - 18:00']


def record_id(value):
    """Coerce a posted id; anything but a whole number is a ValueError"""
    if isinstance(value, bool) or not str(value).isdigit():
        raise ValueError(f"Not a record id: {value!r}")
    return int(value)


class ApiForm(FlaskForm):
    """Base for forms posted by the mobile client as JSON or multipart; session cookies are not used"""
    class Meta:
        csrf = False


class LoginForm(ApiForm):
    email = StringField('Email', validators=[DataRequired(), Email()])
    password = PasswordField('Password', validators=[DataRequired()])


class RegisterForm(ApiForm):
    email = StringField('Email', validators=[DataRequired(), Email()])
    full_name = StringField('Full Name', validators=[Optional(), Length(max=120)])
    password = PasswordField('Password', validators=[DataRequired(), Length(min=6)])
    confirm_password = PasswordField('Confirm Password', validators=[DataRequired(), EqualTo('password')])

    def validate_email(self, email):
        user = User.query.filter_by(email=email.data.strip().lower()).first()
        if user:
            raise ValidationError('Email already registered. Please use a different one.')


class ProfileForm(ApiForm):
    full_name = StringField('Full Name', validators=[DataRequired(), Length(max=120)])


class AvatarForm(ApiForm):
    avatar = FileField('Avatar', validators=[FileRequired(), FileAllowed(IMAGE_TYPES, 'Images only!')])


class PasswordChangeForm(ApiForm):
    current_password = PasswordField('Current Password', validators=[DataRequired()])
    new_password = PasswordField('New Password', validators=[DataRequired(), Length(min=6)])
    confirm_password = PasswordField('Confirm Password', validators=[DataRequired(), EqualTo('new_password')])


class PasswordResetRequestForm(ApiForm):
    email = StringField('Email', validators=[DataRequired(), Email()])


class PasswordResetForm(ApiForm):
    email = StringField('Email', validators=[DataRequired(), Email()])
    otp = StringField('Code', validators=[DataRequired(), Length(min=6, max=6)])
    new_password = PasswordField('New Password', validators=[DataRequired(), Length(min=6)])

    def validate_otp(self, otp):
        if not otp.data.isdigit():
            raise ValidationError('The code is 6 digits.')


class RegisterItemForm(ApiForm):
    name = StringField('Item Name', validators=[DataRequired(), Length(max=100)])
    category = SelectField('Category', choices=CATEGORY_CHOICES, validators=[DataRequired()])
    condition = SelectField('Condition', choices=CONDITION_CHOICES, validators=[DataRequired()])
    description = TextAreaField('Description', validators=[Optional(), Length(max=1000)])
    weight = FloatField('Weight (kg)', validators=[Optional(), NumberRange(min=0)])
    location = StringField('Location', validators=[Optional(), Length(max=255)])
    image = FileField('Upload Image (Optional)', validators=[Optional(), FileAllowed(IMAGE_TYPES, 'Images only!')])


class CollectionRequestForm(ApiForm):
    address = TextAreaField('Pickup Address', validators=[DataRequired()])
    city = StringField('City', validators=[DataRequired(), Length(max=100)])
    state = StringField('Province', validators=[Optional(), Length(max=100)])
    postal_code = StringField('Postal Code', validators=[DataRequired(), Length(max=20)])
    date = DateField('Collection Date', format='%Y-%m-%d', validators=[DataRequired()])
    time_slot = SelectField('Time Slot', choices=[(slot, slot) for slot in TIME_SLOTS], validators=[DataRequired()])
    notes = TextAreaField('Notes', validators=[Optional(), Length(max=500)])
    # Ids of the user's registered items to pick up with this request
    item_ids = SelectMultipleField('Items', choices=[], coerce=record_id, validate_choice=False)


class DumpingReportForm(ApiForm):
    description = TextAreaField('Description', validators=[DataRequired(), Length(max=2000)])
    location = StringField('Location', validators=[DataRequired(), Length(max=255)])
    latitude = FloatField('Latitude', validators=[Optional(), NumberRange(min=-90, max=90)])
    longitude = FloatField('Longitude', validators=[Optional(), NumberRange(min=-180, max=180)])
    waste_type = StringField('Waste Type', validators=[DataRequired(), Length(max=50)])
    image = FileField('Photo (Optional)', validators=[Optional(), FileAllowed(IMAGE_TYPES, 'Images only!')])


class MarketplaceListingForm(ApiForm):
    title = StringField('Title', validators=[DataRequired(), Length(max=100)])
    description = TextAreaField('Description', validators=[Optional(), Length(max=1000)])
    price = FloatField('Price', validators=[Optional(), NumberRange(min=0)], default=0.0)
    type = SelectField('Type', choices=CATEGORY_CHOICES, validators=[DataRequired()])
    condition = SelectField('Condition', choices=CONDITION_CHOICES, validators=[DataRequired()])
    location = StringField('Location', validators=[Optional(), Length(max=255)])
    image = FileField('Photo (Optional)', validators=[Optional(), FileAllowed(IMAGE_TYPES, 'Images only!')])


class WalletDepositForm(ApiForm):
    amount = FloatField('Amount', validators=[
        DataRequired(),
        NumberRange(min=10, max=5000, message='Deposits must be between R10 and R5000.')
    ])


class WalletWithdrawForm(ApiForm):
    amount = FloatField('Amount', validators=[
        DataRequired(),
        NumberRange(min=50, message='The minimum withdrawal is R50.')
    ])
    method = SelectField('Withdrawal Method', choices=[
        ('bank', 'Bank Transfer'),
        ('ewallet', 'E-Wallet')
    ], validators=[DataRequired()])

    def __init__(self, *args, balance=0.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.balance = balance

    def validate_amount(self, amount):
        if amount.data is not None and amount.data > self.balance:
            raise ValidationError('Insufficient balance.')


class ChatForm(ApiForm):
    message = TextAreaField('Message', validators=[
        DataRequired(),
        Length(min=1, max=2000, message="Message must be between 1 and 2000 characters.")
    ])
    conversation_id = IntegerField('Conversation', validators=[Optional()])


class AdminRoleForm(ApiForm):
    email = StringField('Email', validators=[DataRequired(), Email()])
    role = SelectField('Role', choices=[(r.value, r.value.replace('_', ' ').title()) for r in AdminRole],
                       validators=[DataRequired()])
