"""Face greeter: enroll people by face signature, recognize them, greet them once per cooldown."""

__version__ = "0.1.0"
