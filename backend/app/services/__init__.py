# Services package init
"""
Exposure Backend — Services Layer
===================================

What:  Business logic layer sitting between routes (HTTP) and storage.
Why:   Separation of concerns: routes handle HTTP, services handle business rules.
How:   Services receive an AsyncSession per call and return ORM objects or
       read projections. Stateful collaborators (lock table, rate limiter,
       thumbnail queue) live in module-level singletons.

Service Inventory:
    - SlugGenerator: random and text-derived slugs
    - ConcurrencyGuard: per-place async lock table
    - FileService: upload validation, path safety, staged deletion
    - MalwareScanner (abstract): upload scan collaborator
    - ThumbnailQueue + VariantDeriver: background image variants
    - PhotoService: photo upload, deletion, ordering, favorites
    - PlaceService: place lifecycle and read projections
    - AuthenticationService + LoginRateLimiter: admin login and TOTP
"""
