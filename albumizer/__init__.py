# albumizer — rebuild album folders from a photo/video data export,
# writing manifest metadata back into the media files.

__version__ = "0.3.0"
