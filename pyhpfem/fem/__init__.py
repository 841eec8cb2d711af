from .collection import H1Collection, L2Collection
from .element import NodalElement
__all__=['H1Collection','L2Collection','NodalElement']
