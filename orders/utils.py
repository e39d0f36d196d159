import random
import time


def generate_order_number(prefix="ORD"):
    # Collision-resistant, not unique: epoch millis plus a 0-999 suffix
    millis = int(time.time() * 1000)
    return f"{prefix}-{millis}-{random.randint(0, 999)}"
