# app/exceptions.py
class ImageMatchError(Exception):
    """Clase base para excepciones en esta aplicación."""


class InvalidInputError(ImageMatchError):
    """Lote vacío o sin elementos utilizables (error del llamador)."""


class UpstreamUnavailableError(ImageMatchError):
    """Un servicio externo no está configurado (credenciales ausentes, etc.).

    Es fatal para toda la llamada: se detecta antes de cualquier actividad de red.
    """


class StoreUnavailableError(UpstreamUnavailableError):
    """El almacén de blobs no tiene credenciales o configuración."""


class InitializationError(UpstreamUnavailableError):
    """Error durante la inicialización de componentes (modelo, BD, clientes)."""


class ProviderError(ImageMatchError):
    """Una llamada a un proveedor externo devolvió una salida inutilizable o falló el transporte."""


class BlobStoreError(ImageMatchError):
    """Error al escribir un objeto en el almacén de blobs."""


class DatabaseError(ImageMatchError):
    """Error relacionado con operaciones de la base de datos vectorial."""


class ImageProcessingError(ImageMatchError):
    """Error durante la carga o inspección de imágenes."""


class PipelineError(ImageMatchError):
    """Error inesperado durante la ejecución de un pipeline (ingesta, matching)."""
