"""Models package."""

from .user import User
from .credit_transaction import CreditTransaction
from .subscription import Subscription
from .payment_history import PaymentHistory
from .image_generation import ImageGeneration
from .chat_message import ChatMessage
from .uploaded_image import UploadedImage
from .stripe_event import StripeEvent
