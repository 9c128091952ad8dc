from __future__ import annotations
from typing import Optional, List, Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, exists, and_, update
from sqlalchemy.exc import IntegrityError

from libris.db import atomic
from libris.errors import Conflict, NotFound, ValidationFailed
from libris.models import Author, Book, Category

# Campos editables del libro; copies_available solo cambia por préstamos o total_copies.
BOOK_FIELDS = {"title", "isbn", "description", "publication_year", "author_id", "category_id", "total_copies"}
_REQUIRED_BOOK_FIELDS = {"title", "isbn", "author_id", "category_id", "total_copies"}

def _norm_isbn(isbn: str) -> str:
    return (isbn or "").replace("-", "").replace(" ", "").strip().upper()

async def get_author(session: AsyncSession, author_id: int, *, active_only: bool = True) -> Author:
    author = await session.get(Author, author_id)
    if not author or (active_only and not author.is_active):
        raise NotFound(f"No existe el autor {author_id}.", code="AUTHOR_NOT_FOUND")
    return author

async def get_category(session: AsyncSession, category_id: int, *, active_only: bool = True) -> Category:
    category = await session.get(Category, category_id)
    if not category or (active_only and not category.is_active):
        raise NotFound(f"No existe la categoría {category_id}.", code="CATEGORY_NOT_FOUND")
    return category

async def get_book(session: AsyncSession, book_id: int, *, active_only: bool = True) -> Book:
    book = await session.get(Book, book_id, populate_existing=True)
    if not book or (active_only and not book.is_active):
        raise NotFound(f"No existe el libro {book_id}.", code="BOOK_NOT_FOUND")
    return book

async def create_author(session: AsyncSession, *, first_name: str, last_name: str, email: str,
                        biography: Optional[str] = None) -> Author:
    email_norm = (email or "").strip().lower()
    if await session.scalar(select(exists().where(Author.email == email_norm))):
        raise Conflict(f"Ya existe un autor con el email '{email_norm}'.", code="AUTHOR_EMAIL_EXISTS")
    author = Author(first_name=first_name.strip(), last_name=last_name.strip(), email=email_norm, biography=biography)
    try:
        async with atomic(session):
            session.add(author)
    except IntegrityError as e:
        raise Conflict(f"Ya existe un autor con el email '{email_norm}'.", code="AUTHOR_EMAIL_EXISTS") from e
    return author

async def create_category(session: AsyncSession, *, name: str, description: Optional[str] = None) -> Category:
    name = (name or "").strip()
    if not name:
        raise ValidationFailed("Falta el nombre de la categoría.", code="MISSING_NAME")
    if await session.scalar(select(exists().where(Category.name == name))):
        raise Conflict(f"Ya existe la categoría '{name}'.", code="CATEGORY_EXISTS")
    category = Category(name=name, description=description)
    try:
        async with atomic(session):
            session.add(category)
    except IntegrityError as e:
        raise Conflict(f"Ya existe la categoría '{name}'.", code="CATEGORY_EXISTS") from e
    return category

async def insert_book(session: AsyncSession, *, title: str, isbn: str, author_id: int, category_id: int,
                    total_copies: int = 1, description: Optional[str] = None,
                    publication_year: Optional[int] = None) -> Book:
    """Crea el libro dentro de la transacción en curso (sin commit)."""
    if not title:
        raise ValidationFailed("Falta el título del libro.", code="MISSING_TITLE")
    if total_copies is None or total_copies < 0:
        raise ValidationFailed("El total de copias no puede ser negativo.", code="INVALID_TOTAL_COPIES")
    isbn = _norm_isbn(isbn)
    if not isbn:
        raise ValidationFailed("Falta el ISBN del libro.", code="MISSING_ISBN")
    await get_author(session, author_id)
    await get_category(session, category_id)
    if await session.scalar(select(exists().where(Book.isbn == isbn))):
        raise Conflict(f"Ya existe un libro con ISBN '{isbn}'.", code="ISBN_EXISTS")
    book = Book(
        title=title.strip(), isbn=isbn, author_id=author_id, category_id=category_id,
        description=description, publication_year=publication_year,
        total_copies=total_copies, copies_available=total_copies,
    )
    session.add(book)
    await session.flush()
    return book

async def create_book(session: AsyncSession, **fields) -> Book:
    try:
        async with atomic(session):
            book = await insert_book(session, **fields)
    except IntegrityError as e:
        raise Conflict("Ya existe un libro con ese ISBN.", code="ISBN_EXISTS") from e
    return book

async def apply_book_update(session: AsyncSession, book_id: int, patch: Dict[str, Any]) -> Book:
    unknown = set(patch) - BOOK_FIELDS
    if unknown:
        raise ValidationFailed(f"Campos no editables: {', '.join(sorted(unknown))}.", code="INVALID_FIELDS")
    nulls = sorted(k for k in _REQUIRED_BOOK_FIELDS if k in patch and patch[k] is None)
    if nulls:
        raise ValidationFailed(f"Campos obligatorios sin valor: {', '.join(nulls)}.", code="MISSING_FIELDS")
    book = await get_book(session, book_id)
    if "isbn" in patch:
        isbn = _norm_isbn(patch["isbn"])
        if isbn != book.isbn and await session.scalar(select(exists().where(Book.isbn == isbn))):
            raise Conflict(f"Ya existe un libro con ISBN '{isbn}'.", code="ISBN_EXISTS")
        patch = {**patch, "isbn": isbn}
    if "author_id" in patch:
        await get_author(session, patch["author_id"])
    if "category_id" in patch:
        await get_category(session, patch["category_id"])
    patch = dict(patch)
    new_total = patch.pop("total_copies", None)
    has_total = new_total is not None
    for k, v in patch.items():
        setattr(book, k, v)
    await session.flush()
    if has_total:
        if new_total < 0:
            raise ValidationFailed("El total de copias no puede ser negativo.", code="INVALID_TOTAL_COPIES")
        # Ajuste condicional: las copias prestadas se calculan en la misma sentencia.
        res = await session.execute(
            update(Book)
            .where(Book.id == book_id, Book.total_copies - Book.copies_available <= new_total)
            .values(
                copies_available=Book.copies_available + (new_total - Book.total_copies),
                total_copies=new_total,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise Conflict(
                f"Hay copias prestadas; el total no puede bajar a {new_total}.",
                code="TOTAL_BELOW_ON_LOAN",
            )
        await session.refresh(book)
    return book

async def update_book(session: AsyncSession, book_id: int, **patch) -> Book:
    """Edita datos de catálogo. Cambiar ``total_copies`` desplaza ``copies_available``
    en el mismo delta y nunca por debajo de las copias prestadas."""
    try:
        async with atomic(session):
            book = await apply_book_update(session, book_id, patch)
    except IntegrityError as e:
        raise Conflict("La actualización viola una restricción del catálogo.", code="BOOK_CONFLICT") from e
    return book

async def list_books(session: AsyncSession, *, include_inactive: bool = False) -> List[Book]:
    q = select(Book).order_by(Book.id)
    if not include_inactive:
        q = q.where(Book.is_active.is_(True))
    return list((await session.execute(q.execution_options(populate_existing=True))).scalars().all())

async def remove_author(session: AsyncSession, author_id: int) -> Author:
    async with atomic(session):
        author = await get_author(session, author_id)
        if await session.scalar(select(exists().where(and_(Book.author_id == author_id, Book.is_active.is_(True))))):
            raise Conflict("No se puede eliminar un autor con libros asociados.", code="AUTHOR_HAS_BOOKS")
        author.is_active = False
    return author

async def remove_category(session: AsyncSession, category_id: int) -> Category:
    async with atomic(session):
        category = await get_category(session, category_id)
        if await session.scalar(select(exists().where(and_(Book.category_id == category_id, Book.is_active.is_(True))))):
            raise Conflict("No se puede eliminar una categoría con libros asociados.", code="CATEGORY_HAS_BOOKS")
        category.is_active = False
    return category
