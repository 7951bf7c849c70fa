"""CareHub - patients, doctors, diagnostic centres and medical shops in one API"""

__version__ = "1.0.0"
