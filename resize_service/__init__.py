"""
Image resize pipeline package.

Fetches uploaded originals, derives a fixed catalog of resized JPEG variants,
and writes them to a destination bucket, acknowledging the triggering queue
message only once every variant is stored.
"""
