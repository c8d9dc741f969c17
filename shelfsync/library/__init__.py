"""Book identity, bookshelf index and local library storage."""

from shelfsync.library.bookshelf import Bookshelf
from shelfsync.library.identity import BookIdentityResolver, compute_book_hash
