"""Edge-preserving anisotropic image denoising: images, blurs, filter stages and a threaded runner."""

__version__ = "0.1.0"
__all__ = ["algorithm", "blocks", "deriche", "gaussian", "greyc", "image", "settings", "sync"]